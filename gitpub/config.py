"""
gitpub/config.py

Configurações da aplicação, carregadas de variáveis de ambiente com prefixo
`GITPUB_` (ou de um arquivo `.env` na raiz do projeto).

Chaves privadas por conta ficam em `private_keys` (handle → PEM) ou em
`{keys_dir}/{handle}.pem`; quem resolve isso é o `KeyStore` em
gitpub/activitypub/keys.py.
"""

from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

VERSION = "1.0.0"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GITPUB_",
        env_file=".env",
        extra="ignore",
    )

    domain: str
    database_url: str = "sqlite+aiosqlite:///./gitpub.db"
    admin_token: SecretStr = SecretStr("")

    # Material de chave por conta, nunca logar
    private_keys: dict[str, SecretStr] = {}
    keys_dir: Path = Path("keys")

    # Checkout local do repositório de conteúdo
    content_dir: Path | None = None
    auto_push: bool = True

    # Site humano (páginas HTML geradas a partir do repositório de conteúdo)
    web_url: str | None = None

    http_timeout: float = 10.0
    user_agent: str | None = None

    delivery_max_attempts: int = 10
    delivery_batch_size: int = 50
    delivery_base_delay: int = 60
    delivery_max_delay: int = 86400
    delivery_lease: int = 300
    drain_interval: int = 60

    # None = entradas do cache de actors nunca expiram
    actor_cache_ttl: int | None = None

    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    def outbound_user_agent(self) -> str:
        return self.user_agent or f"gitpub/{VERSION} (+{self.base_url}/)"


settings = Settings()
