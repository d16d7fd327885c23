"""
gitpub/models/account.py

Contas locais. A identidade é imutável; perfil e chave pública chegam
pelo espelho de conteúdo (gitpub/services/content.py).
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class Account(Base):
    __tablename__ = "accounts"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256))
    summary: Mapped[str] = mapped_column(Text, default="")
    icon_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    public_key: Mapped[str] = mapped_column(Text, default="")

    manually_approves_followers: Mapped[bool] = mapped_column(Boolean, default=False)
    discoverable: Mapped[bool] = mapped_column(Boolean, default=True)

    # [{"name": ..., "value": ...}] viram PropertyValue no documento do actor
    fields: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Account handle={self.handle!r}>"
