"""
gitpub/activitypub/handlers.py

Handlers das atividades recebidas no inbox.

O estado vive nas tabelas followers/following/inbox_activities; cada
handler aplica uma transição idempotente (upsert, insert-or-ignore,
delete, update condicional), pois a entrega entre servidores é
at-least-once e a mesma atividade pode chegar mais de uma vez.

Handlers:
- Follow          → resolve o actor, grava o seguidor e responde com Accept
- Undo(Follow)    → remove o seguidor
- Undo(Like/Boost)→ remove a atividade registrada
- Create(Note)    → registra a atividade
- Update(Person)  → atualiza o snapshot do actor no seguidor
- Delete          → remove atividades registradas pelo objeto
- Like / Announce → registra a atividade
- Accept(Follow)  → marca o following como aceito
- Reject          → remove o following

Tipos desconhecidos recebem 202 sem efeito.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import BackgroundTasks, Response
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub import urls
from gitpub.activitypub.delivery import deliver
from gitpub.activitypub.keys import get_key_store
from gitpub.activitypub.outbound import build_accept
from gitpub.activitypub.resolver import cache_actor, resolve_actor
from gitpub.errors import ActorUnreachable, ProtocolError
from gitpub.services.content import push_changes
from gitpub.utils import ulid

log = logging.getLogger(__name__)


def id_of(value) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) else None
    return None


@dataclass
class InboxContext:
    session: AsyncSession
    handle: str
    activity: dict
    background: BackgroundTasks | None = None
    # Marcado pelos handlers que alteram estado espelhado no repositório de conteúdo
    changed: bool = False

    @property
    def actor_url(self) -> str | None:
        return id_of(self.activity.get("actor"))

    @property
    def object(self):
        return self.activity.get("object")

    @property
    def object_id(self) -> str | None:
        return id_of(self.object)

    @property
    def object_type(self) -> str | None:
        obj = self.object
        return obj.get("type") if isinstance(obj, dict) else None


Handler = Callable[[InboxContext], Awaitable[Response | None]]


class InboxRouter:
    """Despacha cada atividade para o handler registrado para o seu tipo."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def on(self, activity_type: str):
        def decorator(func: Handler) -> Handler:
            self._handlers[activity_type] = func
            return func
        return decorator

    def handles(self, activity_type: str) -> bool:
        return activity_type in self._handlers

    async def dispatch(self, ctx: InboxContext) -> Response:
        activity_type = ctx.activity.get("type")
        handler = self._handlers.get(activity_type) if isinstance(activity_type, str) else None
        if handler is None:
            log.info(f"[{ctx.handle}] Tipo de atividade desconhecido: {activity_type}")
            return Response(status_code=202)

        response = await handler(ctx)
        if ctx.changed and ctx.background is not None:
            ctx.background.add_task(push_changes)
        return response if response is not None else Response(status_code=202)


async def _record(ctx: InboxContext, activity_type: str) -> None:
    if not ctx.actor_url:
        return
    await store.record_activity(
        ctx.session,
        activity_id=ctx.activity.get("id") or ulid(),
        handle=ctx.handle,
        activity_type=activity_type,
        actor_url=ctx.actor_url,
        object_url=ctx.object_id,
        object_json=ctx.object,
    )
    ctx.changed = True


def register_handlers(router: InboxRouter) -> None:
    """
    Registra os handlers de atividades no router do inbox.
    Chamado em main.py ao criar a aplicação.
    """

    @router.on("Follow")
    async def on_follow(ctx: InboxContext):
        """
        Aceita automaticamente qualquer Follow recebido.
        Resolve o actor remoto, grava o seguidor e envia o Accept assinado;
        se a entrega falhar, o Accept vai para a fila de retry.
        """
        actor_url = ctx.actor_url
        if not actor_url:
            return PlainTextResponse("Bad Request", status_code=400)

        key_store = get_key_store()
        signer = key_store.signing_key(ctx.handle) if key_store.has_key(ctx.handle) else None
        try:
            follower = await resolve_actor(actor_url, signer=signer)
        except (ActorUnreachable, ProtocolError) as exc:
            log.warning(f"[{ctx.handle}] Não foi possível resolver {actor_url}: {exc}")
            return PlainTextResponse("Bad Request", status_code=400)

        await cache_actor(ctx.session, follower)
        await store.upsert_follower(
            ctx.session,
            handle=ctx.handle,
            actor_url=actor_url,
            inbox_url=follower.inbox,
            shared_inbox_url=follower.shared_inbox,
            actor_json=follower.raw,
        )
        await _record(ctx, "Follow")

        await deliver(ctx.session, ctx.handle, build_accept(ctx.handle, ctx.activity), follower.inbox)
        log.info(f"[{ctx.handle}] Follow aceito de {actor_url}")

    @router.on("Undo")
    async def on_undo(ctx: InboxContext):
        if ctx.object_type == "Follow":
            if await store.delete_follower(ctx.session, ctx.handle, ctx.actor_url):
                ctx.changed = True
                log.info(f"[{ctx.handle}] {ctx.actor_url} deixou de seguir")
        elif ctx.object_type in ("Like", "Announce") and ctx.object_id:
            if await store.delete_activity(ctx.session, ctx.handle, ctx.actor_url, ctx.object_id):
                ctx.changed = True

    @router.on("Create")
    async def on_create(ctx: InboxContext):
        if ctx.object_type == "Note":
            await _record(ctx, "Create")

    @router.on("Update")
    async def on_update(ctx: InboxContext):
        if ctx.object_type == "Person":
            await store.update_follower_actor(ctx.session, ctx.handle, ctx.actor_url, ctx.object)

    @router.on("Delete")
    async def on_delete(ctx: InboxContext):
        if ctx.object_id:
            await store.delete_activities_by_object(ctx.session, ctx.handle, ctx.object_id)

    @router.on("Like")
    async def on_like(ctx: InboxContext):
        if ctx.object_id:
            await _record(ctx, "Like")

    @router.on("Announce")
    async def on_announce(ctx: InboxContext):
        if ctx.object_id:
            await _record(ctx, "Announce")

    @router.on("Accept")
    async def on_accept(ctx: InboxContext):
        if ctx.object_type == "Follow" or isinstance(ctx.object, str):
            if await store.accept_following(ctx.session, ctx.handle, ctx.actor_url):
                ctx.changed = True
                log.info(f"[{ctx.handle}] Follow aceito por {ctx.actor_url}")

    @router.on("Reject")
    async def on_reject(ctx: InboxContext):
        if await store.delete_following(ctx.session, ctx.handle, ctx.actor_url):
            ctx.changed = True
            log.info(f"[{ctx.handle}] Follow rejeitado por {ctx.actor_url}")


# ---------------------------------------------------------------------------
# Shared inbox
# ---------------------------------------------------------------------------

def _addressed(activity: dict) -> list[str]:
    refs: list[str] = []

    def add(value):
        if isinstance(value, list):
            for item in value:
                add(item)
        elif (ref := id_of(value)) is not None:
            refs.append(ref)

    add(activity.get("to"))
    add(activity.get("cc"))
    obj = activity.get("object")
    add(obj)
    if isinstance(obj, dict):
        add(obj.get("object"))
        add(obj.get("actor"))
    return refs


async def shared_inbox_targets(session: AsyncSession, activity: dict) -> list[str]:
    """
    Contas locais a que uma atividade do shared inbox se destina: actors
    locais citados em to/cc/object; se nenhum, as contas que seguem o remetente.
    """
    handles: list[str] = []
    for ref in _addressed(activity):
        handle = urls.local_handle(ref)
        if handle and handle not in handles and await store.get_account(session, handle):
            handles.append(handle)
    if handles:
        return handles

    sender = id_of(activity.get("actor"))
    if not sender:
        return []
    return await store.handles_following(session, sender)
