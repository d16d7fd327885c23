"""
Fixtures compartilhadas entre todos os testes.
"""

import os

# Settings é instanciado no import de gitpub.config: o ambiente precisa
# estar pronto antes de qualquer import do pacote
os.environ.setdefault("GITPUB_DOMAIN", "ap.test")
os.environ.setdefault("GITPUB_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GITPUB_DRAIN_INTERVAL", "0")

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

REMOTE_ACTOR = "https://remote.example/users/bob"
REMOTE_INBOX = "https://remote.example/users/bob/inbox"
REMOTE_SHARED_INBOX = "https://remote.example/inbox"
ADMIN_TOKEN = "s3cret-admin-token"


# ---------------------------------------------------------------------------
# Chaves RSA geradas em memória, evita dependência de arquivos em disco
# ---------------------------------------------------------------------------


def _private_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _public_pem(key) -> str:
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


@pytest.fixture(scope="session")
def rsa_private_key():
    """Chave da conta local `alice`, gerada uma única vez por sessão de testes."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> str:
    return _private_pem(rsa_private_key)


@pytest.fixture(scope="session")
def rsa_public_key_pem(rsa_private_key) -> str:
    return _public_pem(rsa_private_key)


@pytest.fixture(scope="session")
def remote_private_key():
    """Chave do actor remoto `bob`, usada para assinar requisições ao inbox."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def remote_public_key_pem(remote_private_key) -> str:
    return _public_pem(remote_private_key)


# ---------------------------------------------------------------------------
# Settings isoladas para testes
# Usa monkeypatch para sobrescrever os atributos sem tocar em .env
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def patch_settings(monkeypatch, rsa_private_key_pem, tmp_path):
    """
    Sobrescreve as settings com valores de teste.
    `autouse=True` garante que nenhum teste acesse configurações reais
    ou tente ler chaves do disco.
    """
    from gitpub import config

    monkeypatch.setattr(config.settings, "domain", "ap.test")
    monkeypatch.setattr(config.settings, "admin_token", SecretStr(ADMIN_TOKEN))
    monkeypatch.setattr(config.settings, "private_keys", {"alice": SecretStr(rsa_private_key_pem)})
    monkeypatch.setattr(config.settings, "keys_dir", tmp_path / "keys")
    monkeypatch.setattr(config.settings, "content_dir", None)
    monkeypatch.setattr(config.settings, "auto_push", False)
    monkeypatch.setattr(config.settings, "web_url", None)
    monkeypatch.setattr(config.settings, "actor_cache_ttl", None)
    monkeypatch.setattr(config.settings, "drain_interval", 0)
    # Registra os campos que alguns testes alteram diretamente, para restaurá-los
    monkeypatch.setattr(config.settings, "delivery_max_attempts", config.settings.delivery_max_attempts)
    monkeypatch.setattr(config.settings, "delivery_batch_size", config.settings.delivery_batch_size)
    return config.settings


# ---------------------------------------------------------------------------
# Banco em memória isolado por teste
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    from gitpub.database import Base
    from gitpub.models import (  # noqa: F401
        account,
        actor_cache,
        delivery_queue,
        follower,
        following,
        inbox_activity,
        post,
    )

    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine, monkeypatch):
    """
    Fábrica de sessões no banco em memória. Substitui a fábrica global para
    que worker e espelho de conteúdo (que abrem sessões próprias) usem o
    mesmo banco do teste.
    """
    from gitpub import database

    factory = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    monkeypatch.setattr(database, "async_session_factory", factory)
    return factory


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def alice(session, rsa_public_key_pem):
    """Conta local `alice`."""
    from gitpub import store

    await store.upsert_account(
        session,
        handle="alice",
        name="Alice",
        summary="Escrevendo em markdown",
        public_key=rsa_public_key_pem,
        manually_approves_followers=False,
        discoverable=True,
        fields=[{"name": "Site", "value": "https://alice.example"}],
    )
    return await store.get_account(session, "alice")


# ---------------------------------------------------------------------------
# Servidores remotos falsos (httpx.MockTransport)
# ---------------------------------------------------------------------------


class RemoteServer:
    """
    Fediverso em miniatura: documentos de actor, respostas de WebFinger e
    inboxes com status configuráveis. Registra toda requisição recebida.
    """

    def __init__(self):
        self.documents: dict[str, tuple[int, dict | None]] = {}
        self.webfinger: dict[str, dict] = {}
        self.inbox_status: dict[str, list] = {}
        self.requests: list[httpx.Request] = []

    def add_actor(
        self,
        url: str = REMOTE_ACTOR,
        public_key_pem: str | None = None,
        inbox: str | None = None,
        shared_inbox: str | None = REMOTE_SHARED_INBOX,
        **extra,
    ) -> dict:
        document = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "id": url,
            "type": "Person",
            "preferredUsername": url.rstrip("/").rsplit("/", 1)[-1],
            "name": "Bob",
            "inbox": inbox or f"{url}/inbox",
        }
        if shared_inbox:
            document["endpoints"] = {"sharedInbox": shared_inbox}
        if public_key_pem:
            document["publicKey"] = {
                "id": f"{url}#main-key",
                "owner": url,
                "publicKeyPem": public_key_pem,
            }
        document.update(extra)
        self.documents[url] = (200, document)
        return document

    def add_webfinger(self, acct: str, actor_url: str, link_type: str = "application/activity+json") -> None:
        self.webfinger[f"acct:{acct}"] = {
            "subject": f"acct:{acct}",
            "links": [{"rel": "self", "type": link_type, "href": actor_url}],
        }

    def set_status(self, url: str, status: int) -> None:
        self.documents[url] = (status, None)

    def set_inbox(self, url: str, *statuses) -> None:
        """Status devolvidos em sequência pelo inbox; o último se repete. None = falha de rede."""
        self.inbox_status[url] = list(statuses)

    def posts(self, url: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == "POST" and (url is None or str(r.url) == url)
        ]

    def gets(self, url: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == "GET" and (url is None or str(r.url).split("?")[0] == url)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"

        if request.method == "POST":
            statuses = self.inbox_status.get(url, [202])
            status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
            if status is None:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(status)

        if request.url.path == "/.well-known/webfinger":
            jrd = self.webfinger.get(request.url.params.get("resource", ""))
            if jrd is None:
                return httpx.Response(404)
            return httpx.Response(200, json=jrd)

        if url in self.documents:
            status, document = self.documents[url]
            if document is None:
                return httpx.Response(status)
            return httpx.Response(status, json=document, headers={"Content-Type": "application/activity+json"})

        return httpx.Response(404)


@pytest.fixture
def remote(monkeypatch):
    """Substitui a fábrica de clientes HTTP por um MockTransport ligado ao RemoteServer."""
    from gitpub.services import http

    server = RemoteServer()

    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(server.handler), follow_redirects=True)

    monkeypatch.setattr(http, "http_client", factory)
    return server


@pytest.fixture
def bob(remote, remote_public_key_pem) -> dict:
    """Actor remoto `bob` com chave pública e shared inbox."""
    return remote.add_actor(REMOTE_ACTOR, public_key_pem=remote_public_key_pem)


# ---------------------------------------------------------------------------
# Cliente HTTP da aplicação
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory):
    from gitpub.database import get_session
    from gitpub.main import api

    async def _session():
        async with session_factory() as s:
            yield s

    api.dependency_overrides[get_session] = _session
    async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=api),
            base_url="https://ap.test",
    ) as ac:
        yield ac
    api.dependency_overrides.clear()


@pytest.fixture
def signed_post(client, remote_private_key):
    """Envia uma atividade assinada por `bob` para um path da aplicação."""
    import json

    from gitpub.activitypub.signatures import sign_request

    async def _post(path: str, activity: dict, key=None, key_id: str = f"{REMOTE_ACTOR}#main-key"):
        body = json.dumps(activity).encode()
        headers = sign_request(f"https://ap.test{path}", "POST", body, key or remote_private_key, key_id)
        return await client.post(path, content=body, headers=headers)

    return _post
