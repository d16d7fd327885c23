"""
gitpub/store.py

Operações de persistência do núcleo de federação.

Cada função de escrita é uma única instrução SQL com commit próprio
(INSERT ... ON CONFLICT DO UPDATE / DO NOTHING, UPDATE condicional,
DELETE). Não há read-modify-write entre round trips: invocações
concorrentes (inbox, drenagem da fila, publish) toleram-se sem lock, e
entregas duplicadas (at-least-once) não corrompem o estado.
"""

from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub.models.account import Account
from gitpub.models.actor_cache import ActorCache
from gitpub.models.delivery_queue import DeliveryQueueItem
from gitpub.models.follower import Follower
from gitpub.models.following import Following
from gitpub.models.inbox_activity import InboxActivity
from gitpub.models.post import Post, Visibility
from gitpub.utils import utcnow


async def _write(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount


# ---------------------------------------------------------------------------
# Contas
# ---------------------------------------------------------------------------

async def get_account(session: AsyncSession, handle: str) -> Account | None:
    return await session.get(Account, handle)


async def list_accounts(session: AsyncSession) -> list[Account]:
    result = await session.scalars(select(Account).order_by(Account.handle))
    return list(result)


async def count_accounts(session: AsyncSession) -> int:
    return await session.scalar(select(func.count()).select_from(Account)) or 0


async def upsert_account(session: AsyncSession, **values) -> None:
    """Insere ou atualiza o perfil; created_at da primeira inserção é preservado."""
    now = utcnow()
    stmt = insert(Account).values(created_at=now, updated_at=now, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Account.handle],
        set_={**{key: stmt.excluded[key] for key in values if key != "handle"}, "updated_at": now},
    )
    await _write(session, stmt)


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------

async def get_post(session: AsyncSession, handle: str, post_id: str) -> Post | None:
    return await session.get(Post, (handle, post_id))


async def count_posts(session: AsyncSession, handle: str | None = None, public_only: bool = False) -> int:
    stmt = select(func.count()).select_from(Post)
    if handle is not None:
        stmt = stmt.where(Post.handle == handle)
    if public_only:
        stmt = stmt.where(Post.visibility == Visibility.PUBLIC.value)
    return await session.scalar(stmt) or 0


async def public_posts_page(
    session: AsyncSession,
    handle: str,
    limit: int,
    max_id: str | None = None,
    min_id: str | None = None,
) -> list[Post]:
    """
    Página de posts públicos, do mais novo ao mais antigo.
    Com `min_id` a página é a imediatamente mais nova que o cursor, não o topo.
    """
    stmt = select(Post).where(Post.handle == handle, Post.visibility == Visibility.PUBLIC.value)
    if max_id:
        stmt = stmt.where(Post.id < max_id).order_by(Post.published_at.desc())
    elif min_id:
        stmt = stmt.where(Post.id > min_id).order_by(Post.published_at.asc())
    else:
        stmt = stmt.order_by(Post.published_at.desc())
    posts = list(await session.scalars(stmt.limit(limit)))
    if min_id and not max_id:
        posts.reverse()
    return posts


async def pending_posts(session: AsyncSession, handle: str | None = None) -> list[Post]:
    """Posts public/unlisted ainda não federados, do mais antigo ao mais novo."""
    stmt = select(Post).where(
        Post.federated_at.is_(None),
        Post.visibility.in_([Visibility.PUBLIC.value, Visibility.UNLISTED.value]),
    )
    if handle is not None:
        stmt = stmt.where(Post.handle == handle)
    stmt = stmt.order_by(Post.published_at.asc())
    return list(await session.scalars(stmt))


async def mark_post_federated(session: AsyncSession, handle: str, post_id: str) -> int:
    stmt = (
        update(Post)
        .where(Post.handle == handle, Post.id == post_id)
        .values(federated_at=utcnow())
    )
    return await _write(session, stmt)


async def upsert_post(session: AsyncSession, **values) -> None:
    """Insere ou atualiza um post; federated_at e created_at nunca são tocados."""
    now = utcnow()
    stmt = insert(Post).values(created_at=now, updated_at=now, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Post.handle, Post.id],
        set_={
            **{key: stmt.excluded[key] for key in values if key not in ("handle", "id")},
            "updated_at": now,
        },
    )
    await _write(session, stmt)


async def delete_posts_except(session: AsyncSession, handle: str, keep_ids: Iterable[str]) -> int:
    stmt = delete(Post).where(Post.handle == handle, Post.id.not_in(list(keep_ids)))
    return await _write(session, stmt)


# ---------------------------------------------------------------------------
# Followers
# ---------------------------------------------------------------------------

async def upsert_follower(
    session: AsyncSession,
    handle: str,
    actor_url: str,
    inbox_url: str,
    shared_inbox_url: str | None = None,
    actor_json: dict | None = None,
    followed_at: datetime | None = None,
) -> None:
    """INSERT OR REPLACE: um Follow repetido substitui a linha existente."""
    values = dict(
        handle=handle,
        actor_url=actor_url,
        inbox_url=inbox_url,
        shared_inbox_url=shared_inbox_url,
        actor_json=actor_json,
        followed_at=followed_at or utcnow(),
    )
    stmt = insert(Follower).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Follower.handle, Follower.actor_url],
        set_={key: stmt.excluded[key] for key in values if key not in ("handle", "actor_url")},
    )
    await _write(session, stmt)


async def get_follower(session: AsyncSession, handle: str, actor_url: str) -> Follower | None:
    return await session.get(Follower, (handle, actor_url))


async def delete_follower(session: AsyncSession, handle: str, actor_url: str) -> int:
    stmt = delete(Follower).where(Follower.handle == handle, Follower.actor_url == actor_url)
    return await _write(session, stmt)


async def update_follower_actor(session: AsyncSession, handle: str, actor_url: str, actor_json: dict) -> int:
    stmt = (
        update(Follower)
        .where(Follower.handle == handle, Follower.actor_url == actor_url)
        .values(actor_json=actor_json)
    )
    return await _write(session, stmt)


async def follower_inboxes(session: AsyncSession, handle: str) -> list[str]:
    """Inboxes distintos dos seguidores, preferindo o shared inbox de cada um."""
    target = func.coalesce(Follower.shared_inbox_url, Follower.inbox_url)
    stmt = select(distinct(target)).where(Follower.handle == handle).order_by(target)
    return list(await session.scalars(stmt))


async def count_followers(session: AsyncSession, handle: str) -> int:
    stmt = select(func.count()).select_from(Follower).where(Follower.handle == handle)
    return await session.scalar(stmt) or 0


async def followers_page(session: AsyncSession, handle: str, limit: int, offset: int) -> list[str]:
    stmt = (
        select(Follower.actor_url)
        .where(Follower.handle == handle)
        .order_by(Follower.followed_at.desc(), Follower.actor_url)
        .limit(limit)
        .offset(offset)
    )
    return list(await session.scalars(stmt))


async def list_followers(session: AsyncSession, handle: str) -> list[Follower]:
    stmt = select(Follower).where(Follower.handle == handle).order_by(Follower.followed_at)
    return list(await session.scalars(stmt))


async def replace_followers(session: AsyncSession, handle: str, rows: list[dict]) -> None:
    await session.execute(delete(Follower).where(Follower.handle == handle))
    if rows:
        await session.execute(insert(Follower).values([{**row, "handle": handle} for row in rows]))
    await session.commit()


# ---------------------------------------------------------------------------
# Following
# ---------------------------------------------------------------------------

async def insert_pending_following(
    session: AsyncSession,
    handle: str,
    actor_url: str,
    inbox_url: str,
    follow_id: str,
) -> bool:
    """
    Cria o registro pendente antes do envio do Follow.
    Devolve False se já existia: INSERT OR IGNORE faz o papel da checagem
    de duplicidade numa única instrução.
    """
    stmt = (
        insert(Following)
        .values(
            handle=handle,
            actor_url=actor_url,
            inbox_url=inbox_url,
            follow_id=follow_id,
            accepted=False,
            requested_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[Following.handle, Following.actor_url])
    )
    return await _write(session, stmt) == 1


async def get_following(session: AsyncSession, handle: str, actor_url: str) -> Following | None:
    return await session.get(Following, (handle, actor_url))


async def accept_following(session: AsyncSession, handle: str, actor_url: str) -> int:
    stmt = (
        update(Following)
        .where(Following.handle == handle, Following.actor_url == actor_url)
        .values(accepted=True, accepted_at=utcnow())
    )
    return await _write(session, stmt)


async def delete_following(session: AsyncSession, handle: str, actor_url: str) -> int:
    stmt = delete(Following).where(Following.handle == handle, Following.actor_url == actor_url)
    return await _write(session, stmt)


async def count_accepted_following(session: AsyncSession, handle: str) -> int:
    stmt = select(func.count()).select_from(Following).where(
        Following.handle == handle, Following.accepted.is_(True)
    )
    return await session.scalar(stmt) or 0


async def following_page(session: AsyncSession, handle: str, limit: int, offset: int) -> list[str]:
    stmt = (
        select(Following.actor_url)
        .where(Following.handle == handle, Following.accepted.is_(True))
        .order_by(Following.accepted_at.desc(), Following.actor_url)
        .limit(limit)
        .offset(offset)
    )
    return list(await session.scalars(stmt))


async def list_following(session: AsyncSession, handle: str) -> list[Following]:
    stmt = select(Following).where(Following.handle == handle).order_by(Following.requested_at)
    return list(await session.scalars(stmt))


async def handles_following(session: AsyncSession, actor_url: str) -> list[str]:
    """Contas locais que seguem `actor_url` (roteamento do shared inbox)."""
    stmt = select(Following.handle).where(Following.actor_url == actor_url)
    return list(await session.scalars(stmt))


async def replace_following(session: AsyncSession, handle: str, rows: list[dict]) -> None:
    await session.execute(delete(Following).where(Following.handle == handle))
    if rows:
        await session.execute(insert(Following).values([{**row, "handle": handle} for row in rows]))
    await session.commit()


# ---------------------------------------------------------------------------
# Log de atividades recebidas
# ---------------------------------------------------------------------------

async def record_activity(
    session: AsyncSession,
    activity_id: str,
    handle: str,
    activity_type: str,
    actor_url: str,
    object_url: str | None,
    object_json: dict | str | None,
) -> bool:
    """INSERT OR IGNORE pelo id da atividade. Devolve True se a linha é nova."""
    stmt = (
        insert(InboxActivity)
        .values(
            id=activity_id,
            handle=handle,
            type=activity_type,
            actor_url=actor_url,
            object_url=object_url,
            object_json=object_json,
            received_at=utcnow(),
            synced_to_github=False,
        )
        .on_conflict_do_nothing(index_elements=[InboxActivity.id])
    )
    return await _write(session, stmt) == 1


async def delete_activity(session: AsyncSession, handle: str, actor_url: str, activity_id: str) -> int:
    """Remove a atividade só se ela pertence a `handle` e foi enviada por `actor_url`."""
    stmt = delete(InboxActivity).where(
        InboxActivity.id == activity_id,
        InboxActivity.handle == handle,
        InboxActivity.actor_url == actor_url,
    )
    return await _write(session, stmt)


async def delete_activities_by_object(session: AsyncSession, handle: str, object_url: str) -> int:
    stmt = delete(InboxActivity).where(
        InboxActivity.handle == handle, InboxActivity.object_url == object_url
    )
    return await _write(session, stmt)


async def unsynced_activities(session: AsyncSession, handle: str, limit: int = 100) -> list[InboxActivity]:
    stmt = (
        select(InboxActivity)
        .where(InboxActivity.handle == handle, InboxActivity.synced_to_github.is_(False))
        .order_by(InboxActivity.received_at)
        .limit(limit)
    )
    return list(await session.scalars(stmt))


async def mark_activities_synced(session: AsyncSession, activity_ids: list[str]) -> int:
    if not activity_ids:
        return 0
    stmt = (
        update(InboxActivity)
        .where(InboxActivity.id.in_(activity_ids))
        .values(synced_to_github=True)
    )
    return await _write(session, stmt)


# ---------------------------------------------------------------------------
# Cache de actors
# ---------------------------------------------------------------------------

async def get_cached_actor(session: AsyncSession, actor_url: str) -> ActorCache | None:
    return await session.get(ActorCache, actor_url)


async def upsert_cached_actor(session: AsyncSession, **values) -> None:
    values.setdefault("fetched_at", utcnow())
    stmt = insert(ActorCache).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[ActorCache.actor_url],
        set_={key: stmt.excluded[key] for key in values if key != "actor_url"},
    )
    await _write(session, stmt)


# ---------------------------------------------------------------------------
# Fila de entregas
# ---------------------------------------------------------------------------

async def enqueue_delivery(
    session: AsyncSession,
    handle: str,
    activity: dict,
    target_inbox: str,
    next_attempt_at: datetime,
    last_error: str | None = None,
) -> None:
    stmt = insert(DeliveryQueueItem).values(
        handle=handle,
        activity_json=activity,
        target_inbox=target_inbox,
        attempts=0,
        next_attempt_at=next_attempt_at,
        last_error=last_error,
        created_at=utcnow(),
    )
    await _write(session, stmt)


async def due_deliveries(
    session: AsyncSession, now: datetime, max_attempts: int, limit: int
) -> list[DeliveryQueueItem]:
    stmt = (
        select(DeliveryQueueItem)
        .where(DeliveryQueueItem.next_attempt_at <= now, DeliveryQueueItem.attempts < max_attempts)
        .order_by(DeliveryQueueItem.next_attempt_at)
        .limit(limit)
        # claim/reschedule não sincronizam a sessão; attempts vem sempre do banco
        .execution_options(populate_existing=True)
    )
    return list(await session.scalars(stmt))


async def claim_delivery(session: AsyncSession, item_id: int, now: datetime, lease_until: datetime) -> bool:
    """
    Reserva o item empurrando next_attempt_at para o fim do lease.
    Só uma drenagem consegue o UPDATE enquanto o item ainda está vencido.
    """
    stmt = (
        update(DeliveryQueueItem)
        .where(DeliveryQueueItem.id == item_id, DeliveryQueueItem.next_attempt_at <= now)
        .values(next_attempt_at=lease_until)
        .execution_options(synchronize_session=False)
    )
    return await _write(session, stmt) == 1


async def delete_delivery(session: AsyncSession, item_id: int) -> int:
    return await _write(session, delete(DeliveryQueueItem).where(DeliveryQueueItem.id == item_id))


async def reschedule_delivery(
    session: AsyncSession, item_id: int, next_attempt_at: datetime, last_error: str
) -> int:
    stmt = (
        update(DeliveryQueueItem)
        .where(DeliveryQueueItem.id == item_id)
        .values(
            attempts=DeliveryQueueItem.attempts + 1,
            next_attempt_at=next_attempt_at,
            last_error=last_error,
        )
        .execution_options(synchronize_session=False)
    )
    return await _write(session, stmt)
