"""
gitpub/models/following.py

Actors remotos que uma conta local segue.

Ciclo de vida: criado pendente (accepted=False) antes do envio do Follow,
marcado como aceito ao receber Accept, removido por Reject ou Undo local.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class Following(Base):
    __tablename__ = "following"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_url: Mapped[str] = mapped_column(String(2048), primary_key=True)
    inbox_url: Mapped[str] = mapped_column(String(2048))

    # id da atividade Follow enviada
    follow_id: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    requested_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Following handle={self.handle!r} actor_url={self.actor_url!r} "
            f"accepted={self.accepted!r}>"
        )
