"""
gitpub/admin.py

Controles do operador sobre o núcleo de federação, protegidos por
`Authorization: Bearer {admin_token}`. Token vazio desativa a superfície.

Rotas:
- POST /admin/sync           → pull/push do repositório de conteúdo
- POST /admin/publish        → publica posts pendentes (ou um post específico)
- GET  /admin/accounts       → lista as contas
- POST /admin/process-queue  → drena a fila de entregas agora
- POST /admin/follow         → segue um actor remoto
- POST /admin/unfollow       → deixa de seguir um actor remoto

Falhas respondem `{"success": false, "error": "..."}`.
"""

import logging
import secrets
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub import urls
from gitpub.activitypub.delivery import drain_queue
from gitpub.activitypub.outbound import follow_actor, publish_pending, publish_post, unfollow_actor
from gitpub.config import settings
from gitpub.database import get_session
from gitpub.services.content import get_mirror, push_changes

log = logging.getLogger(__name__)


class AdminError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


async def require_admin(authorization: str | None = Header(default=None)) -> None:
    token = settings.admin_token.get_secret_value()
    if not token or not authorization or not secrets.compare_digest(authorization, f"Bearer {token}"):
        raise AdminError(401, "Unauthorized")


router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


async def _guarded(action: str, coro):
    try:
        return await coro
    except AdminError:
        raise
    except Exception as exc:
        log.error(f"Erro em /admin/{action}: {exc}", exc_info=True)
        raise AdminError(500, str(exc)) from exc


# ---------------------------------------------------------------------------
# Corpos das requisições
# ---------------------------------------------------------------------------

class SyncRequest(BaseModel):
    handle: str | None = None
    direction: Literal["pull", "push"] = "pull"


class PublishRequest(BaseModel):
    handle: str | None = None
    post_id: str | None = None


class FollowRequest(BaseModel):
    handle: str | None = None
    target: str | None = None


async def _require_account(session: AsyncSession, body: FollowRequest) -> None:
    if not body.handle or not body.target:
        raise AdminError(400, "handle and target are required")
    if await store.get_account(session, body.handle) is None:
        raise AdminError(404, f"Account not found: {body.handle}")


# ---------------------------------------------------------------------------
# Rotas
# ---------------------------------------------------------------------------

@router.post("/sync")
async def sync(body: SyncRequest, session: AsyncSession = Depends(get_session)):
    mirror = get_mirror()
    if mirror is None:
        raise AdminError(400, "content_dir is not configured")

    if body.direction == "push":
        synced = await _guarded("sync", mirror.push(session))
    else:
        synced = await _guarded("sync", mirror.pull(session, body.handle))
    return {"success": True, "direction": body.direction, "synced": synced}


@router.post("/publish")
async def publish(body: PublishRequest, session: AsyncSession = Depends(get_session)):
    if body.post_id:
        if not body.handle:
            raise AdminError(400, "handle is required with post_id")
        if not await _guarded("publish", publish_post(session, body.handle, body.post_id)):
            raise AdminError(404, f"Post not found: {body.post_id}")
        posts = [(body.handle, body.post_id)]
    else:
        posts = await _guarded("publish", publish_pending(session, body.handle))

    return {
        "success": True,
        "published": len(posts),
        "posts": [{"handle": handle, "id": post_id} for handle, post_id in posts],
    }


@router.get("/accounts")
async def accounts(session: AsyncSession = Depends(get_session)):
    return {
        "accounts": [
            {
                "handle": account.handle,
                "name": account.name,
                "summary": account.summary,
                "actorId": urls.actor_url(account.handle),
            }
            for account in await store.list_accounts(session)
        ]
    }


@router.post("/process-queue")
async def process_queue(session: AsyncSession = Depends(get_session)):
    processed = await _guarded("process-queue", drain_queue(session))
    return {"success": True, "processed": processed}


@router.post("/follow")
async def follow(body: FollowRequest, background: BackgroundTasks, session: AsyncSession = Depends(get_session)):
    await _require_account(session, body)
    actor_id = await _guarded("follow", follow_actor(session, body.handle, body.target))
    background.add_task(push_changes)
    return {"success": True, "actorId": actor_id, "message": f"Follow request sent to {actor_id}"}


@router.post("/unfollow")
async def unfollow(body: FollowRequest, background: BackgroundTasks, session: AsyncSession = Depends(get_session)):
    await _require_account(session, body)
    removed = await _guarded("unfollow", unfollow_actor(session, body.handle, body.target))
    background.add_task(push_changes)
    message = f"Unfollowed {body.target}" if removed else f"Not following {body.target}"
    return {"success": True, "message": message}
