"""
gitpub/models/follower.py

Modelo ORM para os seguidores remotos de cada conta local.

Uma linha por par (handle, actor_url). Criada quando um Follow remoto é
aceito; removida por Undo(Follow). O inbox (e o shared inbox, quando
houver) fica em cache para não refazer o fetch a cada entrega.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class Follower(Base):
    __tablename__ = "followers"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)

    # URL canônica do actor remoto, identificador único no Fediverso
    # ex: "https://mastodon.social/users/fulano"
    actor_url: Mapped[str] = mapped_column(String(2048), primary_key=True)

    inbox_url: Mapped[str] = mapped_column(String(2048))
    shared_inbox_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # Snapshot do documento do actor (sobrescrito por Update(Person))
    actor_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # insert_default é avaliado pelo SQLAlchemy no momento do INSERT,
    # garantindo o timezone correto independente da configuração do sistema
    followed_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )

    @property
    def delivery_inbox(self) -> str:
        return self.shared_inbox_url or self.inbox_url

    def __repr__(self) -> str:
        return f"<Follower handle={self.handle!r} actor_url={self.actor_url!r}>"
