"""
gitpub/activitypub/signatures.py

HTTP Signatures (draft-cavage, rsa-sha256) para requisições de saída e
verificação das de entrada.

Assinatura e verificação usam a mesma canonicalização: uma linha
`nome: valor` por header listado, unidas por "\\n", com o pseudo-header
`(request-target)` = `<método em minúsculas> <path>[?query]`.

Conjuntos de headers assinados:
- POST → (request-target) host date digest content-type
- GET  → (request-target) host date accept
"""

import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from email.utils import formatdate
from typing import Awaitable, Callable, Mapping
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey

from gitpub.activitypub.urls import ACCEPT_ACTIVITY, ACTIVITY_JSON
from gitpub.errors import FederationError

log = logging.getLogger(__name__)

POST_HEADERS = ("(request-target)", "host", "date", "digest", "content-type")
GET_HEADERS = ("(request-target)", "host", "date", "accept")

# Motivos de falha devolvidos em SignatureVerification.error
MISSING_SIGNATURE = "MissingSignature"
INVALID_FORMAT = "InvalidFormat"
KEY_NOT_FOUND = "KeyNotFound"
MISSING_HEADER = "MissingHeader"
DIGEST_MISMATCH = "DigestMismatch"
BAD_SIGNATURE = "BadSignature"

_PARAM_RE = re.compile(r'\s*([A-Za-z]+)\s*=\s*(?:"([^"]*)"|([^,]*))\s*(?:,|$)')

PublicKeyLookup = Callable[[str], Awaitable[str | None]]


@dataclass
class SignatureVerification:
    valid: bool
    key_id: str | None = None
    error: str | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Primitivas
# ---------------------------------------------------------------------------

def body_digest(body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode()
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode()


def request_target(method: str, url: str) -> str:
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return f"{method.lower()} {path}"


def signing_string(header_names: list[str] | tuple[str, ...], values: Mapping[str, str]) -> str:
    return "\n".join(f"{name}: {values[name]}" for name in header_names)


def parse_signature_header(value: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for match in _PARAM_RE.finditer(value or ""):
        key, quoted, bare = match.groups()
        params[key] = quoted if quoted is not None else bare.strip()
    return params


def _sign(private_key: RSAPrivateKey, data: str) -> str:
    signature = private_key.sign(data.encode(), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode()


def _signature_header(key_id: str, header_names: tuple[str, ...], signature: str) -> str:
    return ",".join(
        [
            f'keyId="{key_id}"',
            'algorithm="rsa-sha256"',
            f'headers="{" ".join(header_names)}"',
            f'signature="{signature}"',
        ]
    )


# ---------------------------------------------------------------------------
# Assinatura
# ---------------------------------------------------------------------------

def sign_request(
    url: str,
    method: str,
    body: bytes | str,
    private_key: RSAPrivateKey,
    key_id: str,
    *,
    date: str | None = None,
) -> dict[str, str]:
    """
    Assina uma requisição com corpo (POST) e devolve os headers a enviar.
    O Digest cobre o corpo exato que será transmitido.
    """
    host = urlsplit(url).netloc
    date = date or formatdate(usegmt=True)
    digest = body_digest(body)

    values = {
        "(request-target)": request_target(method, url),
        "host": host,
        "date": date,
        "digest": digest,
        "content-type": ACTIVITY_JSON,
    }
    signature = _sign(private_key, signing_string(POST_HEADERS, values))

    return {
        "Host": host,
        "Date": date,
        "Digest": digest,
        "Content-Type": ACTIVITY_JSON,
        "Accept": ACCEPT_ACTIVITY,
        "Signature": _signature_header(key_id, POST_HEADERS, signature),
    }


def sign_get_request(
    url: str,
    private_key: RSAPrivateKey,
    key_id: str,
    *,
    date: str | None = None,
) -> dict[str, str]:
    """Assina um GET (authorized fetch): sem corpo, logo sem digest/content-type."""
    host = urlsplit(url).netloc
    date = date or formatdate(usegmt=True)

    values = {
        "(request-target)": request_target("get", url),
        "host": host,
        "date": date,
        "accept": ACCEPT_ACTIVITY,
    }
    signature = _sign(private_key, signing_string(GET_HEADERS, values))

    return {
        "Host": host,
        "Date": date,
        "Accept": ACCEPT_ACTIVITY,
        "Signature": _signature_header(key_id, GET_HEADERS, signature),
    }


# ---------------------------------------------------------------------------
# Verificação
# ---------------------------------------------------------------------------

def _load_public_key(pem: str) -> RSAPublicKey:
    key = serialization.load_pem_public_key(pem.encode())
    if not isinstance(key, RSAPublicKey):
        raise ValueError("not an RSA public key")
    return key


async def verify_request(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: bytes | None,
    lookup: PublicKeyLookup,
) -> SignatureVerification:
    """
    Verifica a assinatura de uma requisição recebida.

    `path` é o path com a query string, exatamente como recebido.
    `lookup(key_id)` devolve o PEM da chave pública do signatário ou None.
    Nunca levanta exceção: falhas viram `valid=False` com o motivo em `error`.
    """
    lowered = {name.lower(): value for name, value in headers.items()}

    raw = lowered.get("signature")
    if not raw:
        return SignatureVerification(False, error=MISSING_SIGNATURE, detail="Missing Signature header")

    params = parse_signature_header(raw)
    key_id = params.get("keyId")
    header_list = params.get("headers")
    signature = params.get("signature")
    if not key_id or not header_list or not signature:
        return SignatureVerification(False, key_id=key_id, error=INVALID_FORMAT,
                                     detail="Invalid Signature header format")

    try:
        public_key_pem = await lookup(key_id)
    except FederationError as exc:
        log.warning(f"Falha ao obter chave pública de {key_id}: {exc}")
        public_key_pem = None
    if not public_key_pem:
        return SignatureVerification(False, key_id=key_id, error=KEY_NOT_FOUND,
                                     detail="No public key found")

    names = header_list.lower().split()
    values: dict[str, str] = {}
    for name in names:
        if name == "(request-target)":
            values[name] = f"{method.lower()} {path}"
        elif name in lowered:
            values[name] = lowered[name]
        else:
            return SignatureVerification(False, key_id=key_id, error=MISSING_HEADER,
                                         detail=f"Missing header: {name}")

    if "digest" in names and body is not None:
        algorithm, _, received = values["digest"].partition("=")
        expected = body_digest(body).partition("=")[2]
        # Alguns servidores enviam "sha-256=" em minúsculas
        if algorithm.lower() != "sha-256" or received != expected:
            return SignatureVerification(False, key_id=key_id, error=DIGEST_MISMATCH,
                                         detail="Digest does not match body")

    try:
        public_key = _load_public_key(public_key_pem)
        public_key.verify(
            base64.b64decode(signature),
            signing_string(names, values).encode(),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except (InvalidSignature, ValueError, TypeError) as exc:
        return SignatureVerification(False, key_id=key_id, error=BAD_SIGNATURE,
                                     detail=f"Verification error: {exc!r}")

    return SignatureVerification(True, key_id=key_id)
