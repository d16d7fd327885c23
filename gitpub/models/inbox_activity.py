"""
gitpub/models/inbox_activity.py

Log das atividades recebidas, chaveado pelo id da atividade. A inserção é
idempotente (INSERT OR IGNORE), então entregas duplicadas não geram linhas
extras. `synced_to_github` é controlado pelo espelho de conteúdo.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class InboxActivity(Base):
    __tablename__ = "inbox_activities"
    __table_args__ = (Index("ix_inbox_activities_handle_object", "handle", "object_url"),)

    id: Mapped[str] = mapped_column(String(2048), primary_key=True)
    handle: Mapped[str] = mapped_column(String(64))
    type: Mapped[str] = mapped_column(String(32))
    actor_url: Mapped[str] = mapped_column(String(2048))
    object_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    object_json: Mapped[dict | str | None] = mapped_column(JSON, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )
    synced_to_github: Mapped[bool] = mapped_column(Boolean, default=False)

    def __repr__(self) -> str:
        return f"<InboxActivity id={self.id!r} type={self.type!r}>"
