"""
gitpub/database.py

Banco SQLite via SQLAlchemy assíncrono.

O acesso ao estado passa todo por gitpub/store.py, onde cada operação é uma
única instrução com commit próprio. Por isso a sessão entregue aos requests
não abre transação: inbox, admin e drenagem da fila nunca seguram locks do
SQLite enquanto esperam a rede.

SQLite não guarda fuso horário. Colunas de data usam UTCDateTime, que grava
em UTC e devolve datetimes aware, então comparações em Python (cache de
actors, sincronização de sessão nos UPDATEs da fila) nunca misturam naive
com aware.

Exporta:
- `engine`                → engine assíncrona compartilhada
- `async_session_factory` → fábrica de sessões do store, do worker e do espelho
- `Base`                  → base declarativa dos modelos em gitpub/models/
- `UTCDateTime`           → tipo de coluna para datas
- `get_session()`         → dependência FastAPI, uma sessão por request
- `init_db()`             → cria as tabelas no startup
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from gitpub.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    connect_args={"check_same_thread": False},
)

# expire_on_commit=False: o store commita a cada instrução e os objetos
# carregados continuam legíveis sem lazy-load fora do contexto async
async_session_factory = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


# ---------------------------------------------------------------------------
# Tipos e base declarativa
# ---------------------------------------------------------------------------

class UTCDateTime(TypeDecorator):
    """DateTime gravado como UTC sem tzinfo e lido de volta com tzinfo=UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Sessões e schema
# ---------------------------------------------------------------------------

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Sessão por request; o que não foi commitado é descartado ao fechar."""
    async with async_session_factory() as session:
        yield session


async def init_db() -> None:
    """Cria as tabelas que ainda não existem. Chamado uma vez, no lifespan."""
    # Os modelos precisam estar importados para constar em Base.metadata
    from gitpub.models import (  # noqa: F401
        account,
        actor_cache,
        delivery_queue,
        follower,
        following,
        inbox_activity,
        post,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
