"""
gitpub/activitypub/keys.py

Resolução das chaves privadas por conta.

O mapeamento handle → chave é explícito: primeiro `settings.private_keys`
(PEMs vindos de um secret store / variável GITPUB_PRIVATE_KEYS em JSON),
depois o arquivo `{settings.keys_dir}/{handle}.pem`. A chave só existe em
memória durante a assinatura e nunca é logada.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from pydantic import SecretStr

from gitpub.activitypub import urls
from gitpub.config import settings
from gitpub.errors import KeyNotConfigured


@dataclass(frozen=True)
class SigningKey:
    key_id: str
    private_key: RSAPrivateKey

    def __repr__(self) -> str:
        return f"SigningKey(key_id={self.key_id!r})"


def load_private_key(pem: str | bytes) -> RSAPrivateKey:
    if isinstance(pem, str):
        pem = pem.encode()
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("Only RSA keys are supported for HTTP Signatures")
    return key


def public_key_pem(private_key: RSAPrivateKey) -> str:
    return (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


class KeyStore:
    def __init__(self, keys: Mapping[str, SecretStr | str] | None = None, keys_dir: Path | None = None):
        self._keys = dict(keys or {})
        self._keys_dir = keys_dir

    def _pem_for(self, handle: str) -> str | None:
        value = self._keys.get(handle)
        if value is not None:
            return value.get_secret_value() if isinstance(value, SecretStr) else value
        if self._keys_dir is not None:
            path = Path(self._keys_dir) / f"{handle}.pem"
            if path.is_file():
                return path.read_text()
        return None

    def has_key(self, handle: str) -> bool:
        return self._pem_for(handle) is not None

    def private_key(self, handle: str) -> RSAPrivateKey:
        pem = self._pem_for(handle)
        if pem is None:
            raise KeyNotConfigured(handle)
        return load_private_key(pem)

    def signing_key(self, handle: str) -> SigningKey:
        return SigningKey(key_id=urls.key_id(handle), private_key=self.private_key(handle))


def get_key_store() -> KeyStore:
    """KeyStore montado a partir das settings atuais."""
    return KeyStore(settings.private_keys, settings.keys_dir)


def get_signing_key(handle: str) -> SigningKey:
    """Atalho usado pela entrega e pelo resolver para assinar requisições."""
    return get_key_store().signing_key(handle)
