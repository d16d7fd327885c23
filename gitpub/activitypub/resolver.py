"""
gitpub/activitypub/resolver.py

Resolução de actors remotos.

Aceita uma URI http(s) ou um handle (`acct:user@domain`, `user@domain`,
`@user@domain`). Handles passam antes pelo WebFinger para descobrir a
URI do actor. O documento do actor é buscado com Accept de ActivityPub e,
quando há uma chave de assinatura, com GET assinado (authorized fetch).

O cache de actors é write-through: quem resolve decide se grava
(`cache_actor`), e só grava quando o actor publica chave pública.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import urldefrag

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub.keys import SigningKey
from gitpub.activitypub.signatures import sign_get_request
from gitpub.activitypub.urls import ACCEPT_ACTIVITY
from gitpub.config import settings
from gitpub.errors import ActorNotFound, ActorUnreachable, ProtocolError
from gitpub.services import http
from gitpub.utils import as_utc, utcnow

log = logging.getLogger(__name__)

ACTIVITY_TYPES = ("application/activity+json", "application/ld+json")


@dataclass
class ActorInfo:
    id: str
    inbox: str
    shared_inbox: str | None = None
    preferred_username: str | None = None
    name: str | None = None
    icon: str | None = None
    public_key_pem: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def delivery_inbox(self) -> str:
        return self.shared_inbox or self.inbox


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _icon_url(icon) -> str | None:
    # icon pode vir como string, objeto Image ou lista de objetos
    if isinstance(icon, list):
        icon = icon[0] if icon else None
    if isinstance(icon, str):
        return icon
    if isinstance(icon, dict):
        url = icon.get("url")
        if isinstance(url, dict):
            return url.get("href")
        return url
    return None


def parse_actor(document: dict) -> ActorInfo:
    if not isinstance(document, dict):
        raise ProtocolError("Actor document is not a JSON object")

    actor_id = document.get("id")
    inbox = document.get("inbox")
    if not actor_id or not inbox:
        raise ProtocolError(f"Actor document without id/inbox: {actor_id!r}")

    endpoints = document.get("endpoints")
    shared_inbox = None
    if isinstance(endpoints, dict):
        shared_inbox = endpoints.get("sharedInbox")
    shared_inbox = shared_inbox or document.get("sharedInbox")

    public_key = document.get("publicKey")
    if isinstance(public_key, list):
        public_key = public_key[0] if public_key else None
    public_key_pem = public_key.get("publicKeyPem") if isinstance(public_key, dict) else None

    return ActorInfo(
        id=actor_id,
        inbox=inbox,
        shared_inbox=shared_inbox,
        preferred_username=document.get("preferredUsername"),
        name=document.get("name"),
        icon=_icon_url(document.get("icon")),
        public_key_pem=public_key_pem,
        raw=document,
    )


def parse_acct(ref: str) -> tuple[str, str] | None:
    """`acct:user@domain`, `user@domain` ou `@user@domain` → (user, domain)."""
    value = ref.strip()
    if value.startswith("acct:"):
        value = value[len("acct:"):]
    value = value.lstrip("@")
    user, sep, domain = value.partition("@")
    if not sep or not user or not domain or "/" in domain:
        return None
    return user, domain


# ---------------------------------------------------------------------------
# Rede
# ---------------------------------------------------------------------------

async def _get_json(url: str, headers: dict) -> dict:
    try:
        async with http.http_client() as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise ActorUnreachable(url, detail=str(exc)) from exc

    if response.status_code in (404, 410):
        raise ActorNotFound(url, status=response.status_code)
    if not response.is_success:
        raise ActorUnreachable(url, status=response.status_code)

    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError(f"Invalid JSON from {url}") from exc


async def webfinger(acct: str) -> str:
    """Descobre a URI do actor para um handle via WebFinger."""
    parsed = parse_acct(acct)
    if parsed is None:
        raise ProtocolError(f"Not an acct handle: {acct}")
    user, domain = parsed

    url = f"https://{domain}/.well-known/webfinger?resource=acct:{user}@{domain}"
    jrd = await _get_json(url, {"Accept": "application/jrd+json, application/json"})

    for link in jrd.get("links") or []:
        if (
            isinstance(link, dict)
            and link.get("rel") == "self"
            and link.get("href")
            and any(kind in (link.get("type") or "") for kind in ACTIVITY_TYPES)
        ):
            return link["href"]

    raise ProtocolError(f"No ActivityPub self link in WebFinger for {user}@{domain}")


async def fetch_actor(url: str, signer: SigningKey | None = None) -> ActorInfo:
    if signer is not None:
        headers = sign_get_request(url, signer.private_key, signer.key_id)
    else:
        headers = {"Accept": ACCEPT_ACTIVITY}
    return parse_actor(await _get_json(url, headers))


async def resolve_actor(ref: str, signer: SigningKey | None = None) -> ActorInfo:
    """
    Resolve uma referência de actor para ActorInfo.

    Levanta ActorNotFound (404/410), ActorUnreachable (outro status ou
    falha de rede) ou ProtocolError (WebFinger sem link self, documento
    sem id/inbox).
    """
    if ref.startswith(("http://", "https://")):
        url = ref
    else:
        url = await webfinger(ref)
    info = await fetch_actor(url, signer)
    log.debug(f"Actor resolvido: {info.id}")
    return info


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

async def cache_actor(session: AsyncSession, info: ActorInfo) -> bool:
    if not info.public_key_pem:
        return False
    await store.upsert_cached_actor(
        session,
        actor_url=info.id,
        inbox=info.inbox,
        shared_inbox=info.shared_inbox,
        public_key_pem=info.public_key_pem,
        name=info.name,
        preferred_username=info.preferred_username,
        icon_url=info.icon,
    )
    return True


def _is_fresh(entry) -> bool:
    if settings.actor_cache_ttl is None:
        return True
    age = utcnow() - as_utc(entry.fetched_at)
    return age < timedelta(seconds=settings.actor_cache_ttl)


class KeyFetcher:
    """
    Lookup de chaves para verify_request que adia a escrita no cache.

    Em cache miss (ou entrada expirada) busca o actor (keyId sem fragmento)
    e guarda o resultado em memória; `save()` grava no cache. O inbox só
    chama `save()` depois que a assinatura confere.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.fetched: ActorInfo | None = None

    async def __call__(self, key_id: str) -> str | None:
        actor_url = urldefrag(key_id).url
        entry = await store.get_cached_actor(self.session, actor_url)
        if entry is not None and entry.public_key_pem and _is_fresh(entry):
            return entry.public_key_pem

        self.fetched = await fetch_actor(actor_url)
        return self.fetched.public_key_pem

    async def save(self) -> bool:
        if self.fetched is None:
            return False
        return await cache_actor(self.session, self.fetched)


async def lookup_public_key(session: AsyncSession, key_id: str) -> str | None:
    """PEM da chave pública do signatário de `key_id`, com cache write-through."""
    fetcher = KeyFetcher(session)
    pem = await fetcher(key_id)
    await fetcher.save()
    return pem
