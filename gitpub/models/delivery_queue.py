"""
gitpub/models/delivery_queue.py

Fila persistente de entregas que falharam na primeira tentativa.

Itens com `attempts >= delivery_max_attempts` permanecem na tabela mas não
são mais selecionados pela drenagem (falha permanente por esgotamento).
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class DeliveryQueueItem(Base):
    __tablename__ = "delivery_queue"
    __table_args__ = (Index("ix_delivery_queue_due", "next_attempt_at", "attempts"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(64))
    activity_json: Mapped[dict] = mapped_column(JSON)
    target_inbox: Mapped[str] = mapped_column(String(2048))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return (
            f"<DeliveryQueueItem id={self.id!r} inbox={self.target_inbox!r} "
            f"attempts={self.attempts!r}>"
        )
