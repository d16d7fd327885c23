"""
gitpub/services/content.py

Espelho do repositório de conteúdo (checkout local em `settings.content_dir`).

Layout:
    accounts/{handle}/profile.json
    accounts/{handle}/public_key.pem
    accounts/{handle}/posts/*.md
    accounts/{handle}/data/followers.json
    accounts/{handle}/data/following.json
    accounts/{handle}/data/received/{replies,likes,boosts}.json

pull() carrega perfis e posts para o banco (posts são markdown com front
matter); push() grava de volta seguidores, following e atividades
recebidas. Commit/push do checkout ficam com o git do operador.
"""

import json
import logging
import re
from pathlib import Path

import markdown
import yaml
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import database, store
from gitpub.activitypub import urls
from gitpub.config import settings
from gitpub.utils import isoformat, parse_datetime, utcnow

log = logging.getLogger(__name__)

_FRONT_MATTER_RE = re.compile(r"^---\n(.*?)\n---\n(.*)$", re.DOTALL)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
_HASHTAG_RE = re.compile(r"#(\w+)")
# Hashtag no texto, não fragmento de URL nem entidade HTML
_HASHTAG_LINK_RE = re.compile(r"(?<![\w/&#])#(\w+)")

RECEIVED_FILES = {
    "Create": "replies.json",
    "Like": "likes.json",
    "Announce": "boosts.json",
}


# ---------------------------------------------------------------------------
# Parsing de posts
# ---------------------------------------------------------------------------

def parse_front_matter(text: str) -> tuple[dict, str]:
    """Separa o bloco YAML entre `---` do corpo markdown."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text.strip()

    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        log.warning(f"Front matter inválido, ignorado: {exc}")
        meta = None
    if not isinstance(meta, dict):
        meta = {}
    return meta, match.group(2).strip()


def _text(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "on", "1")
    return bool(value)


def extract_hashtags(text: str) -> list[str]:
    tags: list[str] = []
    for tag in _HASHTAG_RE.findall(text):
        tag = tag.lower()
        if tag not in tags:
            tags.append(tag)
    return tags


def render_markdown(text: str) -> str:
    linked = _HASHTAG_LINK_RE.sub(lambda m: f"[#{m.group(1)}]({urls.tag_url(m.group(1).lower())})", text)
    return markdown.markdown(linked, extensions=["nl2br"])


def parse_post(text: str, filename: str, handle: str) -> dict:
    """Converte um arquivo de post em valores para a tabela posts."""
    meta, body = parse_front_matter(text)

    media_urls = []
    for _, path in _IMAGE_RE.findall(body):
        media_urls.append(path if path.startswith("http") else urls.media_url(handle, path))
    content = _IMAGE_RE.sub("", body).strip()

    return {
        "handle": handle,
        "id": _text(meta.get("id")) or Path(filename).stem,
        "content": content,
        "content_html": render_markdown(content),
        "published_at": parse_datetime(meta.get("published")) or utcnow(),
        "in_reply_to": _text(meta.get("in_reply_to")),
        "conversation": _text(meta.get("conversation")),
        "sensitive": _flag(meta.get("sensitive")),
        "summary": _text(meta.get("summary")),
        "media_urls": media_urls,
        "tags": extract_hashtags(content),
        "visibility": _text(meta.get("visibility")) or "public",
    }


# ---------------------------------------------------------------------------
# Espelho
# ---------------------------------------------------------------------------

class DirectoryMirror:
    def __init__(self, root: Path | str):
        self.root = Path(root)

    def account_dir(self, handle: str) -> Path:
        return self.root / "accounts" / handle

    def handles(self) -> list[str]:
        accounts = self.root / "accounts"
        if not accounts.is_dir():
            return []
        return sorted(path.name for path in accounts.iterdir() if path.is_dir())

    def _read_json(self, path: Path):
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_if_changed(self, path: Path, content: str) -> bool:
        if path.is_file() and path.read_text(encoding="utf-8") == content:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return True

    # -- pull ---------------------------------------------------------------

    async def pull(self, session: AsyncSession, handle: str | None = None) -> int:
        synced = 0
        for h in [handle] if handle else self.handles():
            synced += await self._pull_account(session, h)
        log.info(f"Pull do repositório de conteúdo: {synced} item(ns)")
        return synced

    async def _pull_account(self, session: AsyncSession, handle: str) -> int:
        base = self.account_dir(handle)
        synced = 0

        profile = self._read_json(base / "profile.json")
        if profile is not None:
            key_path = base / "public_key.pem"
            await store.upsert_account(
                session,
                handle=handle,
                name=profile.get("name") or handle,
                summary=profile.get("summary") or "",
                icon_url=urls.media_url(handle, profile["icon"]) if profile.get("icon") else None,
                image_url=urls.media_url(handle, profile["image"]) if profile.get("image") else None,
                public_key=key_path.read_text(encoding="utf-8") if key_path.is_file() else "",
                manually_approves_followers=bool(profile.get("manuallyApprovesFollowers")),
                discoverable=profile.get("discoverable") is not False,
                fields=profile.get("fields") or None,
            )
            synced += 1

        post_ids = []
        posts_dir = base / "posts"
        for path in sorted(posts_dir.glob("*.md")) if posts_dir.is_dir() else []:
            values = parse_post(path.read_text(encoding="utf-8"), path.name, handle)
            await store.upsert_post(session, **values)
            post_ids.append(values["id"])
            synced += 1
        await store.delete_posts_except(session, handle, post_ids)

        followers = self._read_json(base / "data" / "followers.json")
        if followers is not None:
            rows = [
                {
                    "actor_url": item["actorUrl"],
                    "inbox_url": item["inboxUrl"],
                    "shared_inbox_url": item.get("sharedInboxUrl"),
                    "followed_at": parse_datetime(item.get("followedAt")) or utcnow(),
                }
                for item in followers
                if item.get("actorUrl") and item.get("inboxUrl")
            ]
            await store.replace_followers(session, handle, rows)
            synced += 1

        following = self._read_json(base / "data" / "following.json")
        if following is not None:
            rows = [
                {
                    "actor_url": item["actorUrl"],
                    "inbox_url": item["inboxUrl"],
                    "accepted": bool(item.get("accepted")),
                    "requested_at": parse_datetime(item.get("requestedAt")) or utcnow(),
                    "accepted_at": parse_datetime(item.get("acceptedAt")),
                }
                for item in following
                if item.get("actorUrl") and item.get("inboxUrl")
            ]
            await store.replace_following(session, handle, rows)
            synced += 1

        return synced

    # -- push ---------------------------------------------------------------

    async def push(self, session: AsyncSession) -> int:
        synced = 0
        for account in await store.list_accounts(session):
            synced += await self._push_account(session, account.handle)
        log.info(f"Push para o repositório de conteúdo: {synced} arquivo(s)")
        return synced

    async def _push_account(self, session: AsyncSession, handle: str) -> int:
        data = self.account_dir(handle) / "data"
        synced = 0

        followers = [
            {
                "actorUrl": f.actor_url,
                "inboxUrl": f.inbox_url,
                "sharedInboxUrl": f.shared_inbox_url,
                "followedAt": isoformat(f.followed_at),
            }
            for f in await store.list_followers(session, handle)
        ]
        if self._write_if_changed(data / "followers.json", json.dumps(followers, indent=2)):
            synced += 1

        following = [
            {
                "actorUrl": f.actor_url,
                "inboxUrl": f.inbox_url,
                "accepted": bool(f.accepted),
                "requestedAt": isoformat(f.requested_at),
                "acceptedAt": isoformat(f.accepted_at),
            }
            for f in await store.list_following(session, handle)
        ]
        if self._write_if_changed(data / "following.json", json.dumps(following, indent=2)):
            synced += 1

        activities = await store.unsynced_activities(session, handle)
        by_type: dict[str, list] = {}
        for activity in activities:
            by_type.setdefault(activity.type, []).append(
                {
                    "id": activity.id,
                    "actorUrl": activity.actor_url,
                    "objectUrl": activity.object_url,
                    "receivedAt": isoformat(activity.received_at),
                }
            )

        for activity_type, items in by_type.items():
            filename = RECEIVED_FILES.get(activity_type)
            if filename is None:
                continue
            path = data / "received" / filename
            existing = self._read_json(path) or []
            if self._write_if_changed(path, json.dumps(existing + items, indent=2)):
                synced += 1

        await store.mark_activities_synced(session, [activity.id for activity in activities])
        return synced


def get_mirror() -> DirectoryMirror | None:
    if settings.content_dir is None:
        return None
    return DirectoryMirror(settings.content_dir)


async def push_changes() -> None:
    """
    Push em background após mudanças vindas do inbox ou de follow/unfollow.
    Roda fora do request: falhas são logadas e não propagadas.
    """
    mirror = get_mirror()
    if mirror is None or not settings.auto_push:
        return
    try:
        async with database.async_session_factory() as session:
            await mirror.push(session)
    except (OSError, ValueError, SQLAlchemyError) as exc:
        log.error(f"Falha no push para o repositório de conteúdo: {exc}", exc_info=True)
