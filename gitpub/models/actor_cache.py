"""
gitpub/models/actor_cache.py

Cache write-through de actors remotos, usado na verificação de assinaturas
e nos fluxos de follow. Sobrescrito a cada resolve com chave pública.
"""

from datetime import datetime, timezone

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class ActorCache(Base):
    __tablename__ = "actor_cache"

    actor_url: Mapped[str] = mapped_column(String(2048), primary_key=True)
    inbox: Mapped[str] = mapped_column(String(2048))
    shared_inbox: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    public_key_pem: Mapped[str] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    preferred_username: Mapped[str | None] = mapped_column(String(256), nullable=True)
    icon_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<ActorCache actor_url={self.actor_url!r}>"
