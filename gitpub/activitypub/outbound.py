"""
gitpub/activitypub/outbound.py

Atividades emitidas pelas contas locais: Follow, Undo(Follow), Accept e a
publicação de posts (Create) para os seguidores.

Follow e Undo são entregues pelo mesmo caminho de deliver(): uma falha de
rede vira item da fila de retry, nunca um erro para quem chamou.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub import urls
from gitpub.activitypub.delivery import broadcast, deliver
from gitpub.activitypub.keys import get_key_store
from gitpub.activitypub.notes import build_create
from gitpub.activitypub.resolver import cache_actor, resolve_actor
from gitpub.activitypub.urls import AS_CONTEXT
from gitpub.utils import ulid

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def build_follow(handle: str, target: str, follow_id: str | None = None) -> dict:
    actor = urls.actor_url(handle)
    return {
        "@context": AS_CONTEXT,
        "id": follow_id or f"{actor}/follows/{ulid()}",
        "type": "Follow",
        "actor": actor,
        "object": target,
    }


def build_undo(handle: str, inner: dict) -> dict:
    inner = {key: value for key, value in inner.items() if key != "@context"}
    base = inner.get("id") or f"{urls.actor_url(handle)}/activities/{ulid()}"
    return {
        "@context": AS_CONTEXT,
        "id": f"{base}/undo",
        "type": "Undo",
        "actor": urls.actor_url(handle),
        "object": inner,
    }


def build_accept(handle: str, follow: dict) -> dict:
    actor = urls.actor_url(handle)
    return {
        "@context": AS_CONTEXT,
        "id": f"{actor}/activities/{ulid()}",
        "type": "Accept",
        "actor": actor,
        "object": follow,
    }


def _signer(handle: str):
    # Assina o fetch do actor quando a conta tem chave (authorized fetch)
    key_store = get_key_store()
    return key_store.signing_key(handle) if key_store.has_key(handle) else None


# ---------------------------------------------------------------------------
# Follow / Unfollow
# ---------------------------------------------------------------------------

async def follow_actor(session: AsyncSession, handle: str, target: str) -> str:
    """
    Segue `target` (URI ou handle acct). Devolve a URI do actor.

    O registro pendente é criado antes do envio para que um Accept rápido
    encontre o estado local. Se já havia registro, nada é reenviado.
    Levanta ActorUnreachable/ProtocolError se o actor não puder ser resolvido.
    """
    info = await resolve_actor(target, signer=_signer(handle))
    await cache_actor(session, info)

    follow = build_follow(handle, info.id)
    created = await store.insert_pending_following(
        session, handle, info.id, info.inbox, follow["id"]
    )
    if not created:
        log.info(f"{handle} já segue (ou aguarda) {info.id}")
        return info.id

    await deliver(session, handle, follow, info.inbox)
    log.info(f"Follow enviado de {handle} para {info.id}")
    return info.id


async def unfollow_actor(session: AsyncSession, handle: str, target: str) -> bool:
    """
    Envia Undo(Follow) e remove o registro local, independentemente do
    resultado da entrega. Devolve False se `handle` não seguia `target`.
    """
    actor_url = target
    if not target.startswith(("http://", "https://")):
        actor_url = (await resolve_actor(target, signer=_signer(handle))).id

    following = await store.get_following(session, handle, actor_url)
    if following is None:
        return False

    follow = build_follow(handle, actor_url, following.follow_id)
    await deliver(session, handle, build_undo(handle, follow), following.inbox_url)
    await store.delete_following(session, handle, actor_url)
    log.info(f"{handle} deixou de seguir {actor_url}")
    return True


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------

async def publish_post(session: AsyncSession, handle: str, post_id: str) -> bool:
    """Publica um post específico. Devolve False se o post não existe."""
    post = await store.get_post(session, handle, post_id)
    if post is None:
        return False

    await broadcast(session, handle, build_create(post))
    await store.mark_post_federated(session, handle, post_id)
    log.info(f"Post {post_id} de {handle} publicado")
    return True


async def publish_pending(session: AsyncSession, handle: str | None = None) -> list[tuple[str, str]]:
    """
    Publica todos os posts public/unlisted ainda não federados, do mais
    antigo ao mais novo. Uma falha num post é logada e não interrompe os
    seguintes. Devolve (handle, post_id) dos publicados.
    """
    posts = await store.pending_posts(session, handle)
    # Desanexados: o rollback após uma falha não expira os posts seguintes
    session.expunge_all()

    published: list[tuple[str, str]] = []
    for post in posts:
        try:
            await broadcast(session, post.handle, build_create(post))
            await store.mark_post_federated(session, post.handle, post.id)
        except Exception as exc:
            log.error(f"Falha ao publicar post {post.id} de {post.handle}: {exc}", exc_info=True)
            await session.rollback()
            continue
        published.append((post.handle, post.id))
        log.info(f"Post {post.id} de {post.handle} publicado")
    return published
