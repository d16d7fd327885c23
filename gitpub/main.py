"""
gitpub/main.py

Aplicação FastAPI: superfície de federação (actor, inbox, outbox,
coleções, posts, WebFinger, NodeInfo) e superfície de administração.

O lifespan cria as tabelas e inicia o worker que drena a fila de
entregas em intervalos de `settings.drain_interval` segundos.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from urllib.parse import urldefrag

from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import database, store
from gitpub.activitypub import collections, discovery
from gitpub.activitypub.actor import build_actor
from gitpub.activitypub.handlers import (
    InboxContext,
    InboxRouter,
    id_of,
    register_handlers,
    shared_inbox_targets,
)
from gitpub.activitypub.notes import build_create, build_note
from gitpub.activitypub.resolver import KeyFetcher
from gitpub.activitypub.signatures import verify_request
from gitpub.admin import AdminError, router as admin_router
from gitpub.config import settings
from gitpub.database import get_session
from gitpub.models.post import Visibility

logging.basicConfig(level=settings.log_level)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    import workers.delivery_worker

    await database.init_db()
    worker_task = None
    if settings.drain_interval > 0:
        worker_task = asyncio.create_task(workers.delivery_worker.run_worker())
    yield
    if worker_task is not None:
        worker_task.cancel()


api = FastAPI(title="gitpub", lifespan=lifespan)
api.include_router(admin_router)

inbox_router = InboxRouter()
register_handlers(inbox_router)


@api.exception_handler(AdminError)
async def admin_error_handler(request: Request, exc: AdminError):
    return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Respostas ActivityPub
# ---------------------------------------------------------------------------

class ActivityResponse(JSONResponse):
    media_type = "application/activity+json; charset=utf-8"

    def __init__(self, content, status_code: int = 200, **kwargs):
        super().__init__(content, status_code=status_code, **kwargs)
        self.headers["Access-Control-Allow-Origin"] = "*"


def wants_activity(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/activity+json" in accept or "application/ld+json" in accept


def not_found() -> PlainTextResponse:
    return PlainTextResponse("Not Found", status_code=404)


async def _account_or_none(session: AsyncSession, handle: str):
    return await store.get_account(session, handle)


async def _visible_post(session: AsyncSession, handle: str, post_id: str):
    post = await store.get_post(session, handle, post_id)
    if post is None or post.visibility not in (Visibility.PUBLIC.value, Visibility.UNLISTED.value):
        return None
    return post


# ---------------------------------------------------------------------------
# Descoberta
# ---------------------------------------------------------------------------

@api.get("/.well-known/webfinger")
async def webfinger(resource: str = "", session: AsyncSession = Depends(get_session)):
    parsed = discovery.parse_resource(resource)
    if parsed is None:
        return PlainTextResponse("Bad Request", status_code=400)

    handle, domain = parsed
    if domain != settings.domain or await _account_or_none(session, handle) is None:
        return not_found()

    return JSONResponse(
        discovery.webfinger_document(resource, handle),
        media_type="application/jrd+json",
        headers={"Access-Control-Allow-Origin": "*"},
    )


@api.get("/.well-known/nodeinfo")
async def nodeinfo_links():
    return JSONResponse(discovery.nodeinfo_links(), headers={"Access-Control-Allow-Origin": "*"})


@api.get("/nodeinfo/2.1")
async def nodeinfo(session: AsyncSession = Depends(get_session)):
    document = discovery.nodeinfo_document(
        users=await store.count_accounts(session),
        local_posts=await store.count_posts(session),
    )
    return JSONResponse(
        document,
        media_type=discovery.NODEINFO_PROFILE,
        headers={"Access-Control-Allow-Origin": "*"},
    )


# ---------------------------------------------------------------------------
# Actor e coleções
# ---------------------------------------------------------------------------

@api.get("/users/{handle}")
async def get_actor(handle: str, session: AsyncSession = Depends(get_session)):
    account = await _account_or_none(session, handle)
    if account is None:
        return not_found()
    return ActivityResponse(build_actor(account))


@api.get("/@{handle}")
async def get_profile(handle: str, request: Request, session: AsyncSession = Depends(get_session)):
    account = await _account_or_none(session, handle)
    if account is None:
        return not_found()
    if settings.web_url and not wants_activity(request):
        return RedirectResponse(f"{settings.web_url.rstrip('/')}/@{handle}")
    return ActivityResponse(build_actor(account))


@api.get("/@{handle}/{post_id}")
async def get_permalink(handle: str, post_id: str, request: Request, session: AsyncSession = Depends(get_session)):
    post = await _visible_post(session, handle, post_id)
    if post is None:
        return not_found()
    if settings.web_url and not wants_activity(request):
        return RedirectResponse(f"{settings.web_url.rstrip('/')}/@{handle}/{post_id}")
    return ActivityResponse(build_note(post))


@api.get("/users/{handle}/outbox")
async def get_outbox(
    handle: str,
    page: str | None = None,
    max_id: str | None = None,
    min_id: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    if await _account_or_none(session, handle) is None:
        return not_found()
    return ActivityResponse(await collections.outbox(session, handle, page, max_id, min_id))


@api.get("/users/{handle}/followers")
async def get_followers(handle: str, page: str | None = None, session: AsyncSession = Depends(get_session)):
    if await _account_or_none(session, handle) is None:
        return not_found()
    return ActivityResponse(await collections.followers(session, handle, page))


@api.get("/users/{handle}/following")
async def get_following(handle: str, page: str | None = None, session: AsyncSession = Depends(get_session)):
    if await _account_or_none(session, handle) is None:
        return not_found()
    return ActivityResponse(await collections.following(session, handle, page))


@api.get("/users/{handle}/posts/{post_id}")
async def get_note(handle: str, post_id: str, session: AsyncSession = Depends(get_session)):
    post = await _visible_post(session, handle, post_id)
    if post is None:
        return not_found()
    return ActivityResponse(build_note(post))


@api.get("/users/{handle}/posts/{post_id}/activity")
async def get_note_activity(handle: str, post_id: str, session: AsyncSession = Depends(get_session)):
    post = await _visible_post(session, handle, post_id)
    if post is None:
        return not_found()
    return ActivityResponse(build_create(post))


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

async def _verified_activity(request: Request, session: AsyncSession) -> dict | Response:
    """
    Verifica a assinatura e decodifica o corpo; devolve a atividade ou a
    resposta de erro. A chave precisa pertencer ao `actor` da atividade.
    Nada é gravado (nem o cache de actors) antes da assinatura conferir.
    """
    body = await request.body()
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"

    fetcher = KeyFetcher(session)
    verification = await verify_request(request.method, path, request.headers, body, fetcher)
    if not verification.valid:
        log.warning(f"Assinatura rejeitada em {path}: {verification.error} ({verification.key_id})")
        return PlainTextResponse(f"Unauthorized: {verification.error}", status_code=401)

    try:
        activity = json.loads(body)
    except ValueError:
        return PlainTextResponse("Bad Request", status_code=400)
    if not isinstance(activity, dict):
        return PlainTextResponse("Bad Request", status_code=400)

    actor_url = id_of(activity.get("actor"))
    if actor_url != urldefrag(verification.key_id).url:
        log.warning(f"Chave {verification.key_id} não pertence a {actor_url} em {path}")
        return PlainTextResponse("Unauthorized: KeyOwnerMismatch", status_code=401)

    await fetcher.save()
    return activity


@api.post("/users/{handle}/inbox")
async def user_inbox(
    handle: str,
    request: Request,
    background: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
):
    try:
        if await _account_or_none(session, handle) is None:
            return not_found()

        activity = await _verified_activity(request, session)
        if isinstance(activity, Response):
            return activity

        log.info(f"[{handle}] Recebido {activity.get('type')} de {activity.get('actor')}")
        return await inbox_router.dispatch(InboxContext(session, handle, activity, background))
    except SQLAlchemyError as exc:
        log.error(f"[{handle}] Erro no inbox: {exc}", exc_info=True)
        return PlainTextResponse("Internal Server Error", status_code=500)


@api.post("/inbox")
async def shared_inbox(request: Request, background: BackgroundTasks, session: AsyncSession = Depends(get_session)):
    try:
        activity = await _verified_activity(request, session)
        if isinstance(activity, Response):
            return activity

        handles = await shared_inbox_targets(session, activity)
        log.info(f"Shared inbox: {activity.get('type')} de {activity.get('actor')} para {handles}")

        for handle in handles:
            response = await inbox_router.dispatch(InboxContext(session, handle, activity, background))
            if response.status_code >= 400:
                return response
        return Response(status_code=202)
    except SQLAlchemyError as exc:
        log.error(f"Erro no shared inbox: {exc}", exc_info=True)
        return PlainTextResponse("Internal Server Error", status_code=500)


@api.get("/health")
async def health():
    return {"status": "ok"}
