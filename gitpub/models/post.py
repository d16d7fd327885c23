"""
gitpub/models/post.py

Posts locais. Originam-se no repositório de conteúdo; o núcleo de
federação só lê e grava `federated_at`.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gitpub.database import Base, UTCDateTime


class Visibility(str, enum.Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    FOLLOWERS = "followers"
    DIRECT = "direct"


class Post(Base):
    __tablename__ = "posts"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    content: Mapped[str] = mapped_column(Text, default="")
    content_html: Mapped[str] = mapped_column(Text, default="")
    published_at: Mapped[datetime] = mapped_column(UTCDateTime)

    in_reply_to: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    conversation: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    sensitive: Mapped[bool] = mapped_column(Boolean, default=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    media_urls: Mapped[list] = mapped_column(JSON, default=list)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    visibility: Mapped[str] = mapped_column(String(16), default=Visibility.PUBLIC.value)

    # NULL enquanto o post não foi transmitido aos seguidores
    federated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        insert_default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Post handle={self.handle!r} id={self.id!r}>"
