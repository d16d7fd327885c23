"""
gitpub/activitypub/collections.py

Coleções paginadas do actor: outbox, followers e following.

- outbox: 20 Creates por página, mais novos primeiro, paginação por
  max_id (próxima) / min_id (anterior); a primeira página é `?page=true`
- followers/following: 40 URIs por página, `?page=N`; following lista só
  os aceitos
"""

from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub import urls
from gitpub.activitypub.notes import build_create
from gitpub.activitypub.urls import AS_CONTEXT

OUTBOX_PAGE_SIZE = 20
ACTOR_PAGE_SIZE = 40


def _collection(collection_id: str, total: int, first: str) -> dict:
    return {
        "@context": AS_CONTEXT,
        "id": collection_id,
        "type": "OrderedCollection",
        "totalItems": total,
        "first": first,
    }


def _page(page_id: str, part_of: str, items: list) -> dict:
    return {
        "@context": AS_CONTEXT,
        "id": page_id,
        "type": "OrderedCollectionPage",
        "partOf": part_of,
        "orderedItems": items,
    }


async def outbox(
    session: AsyncSession,
    handle: str,
    page: str | None = None,
    max_id: str | None = None,
    min_id: str | None = None,
) -> dict:
    base = urls.outbox_url(handle)
    if not page:
        total = await store.count_posts(session, handle, public_only=True)
        return _collection(base, total, f"{base}?page=true")

    posts = await store.public_posts_page(session, handle, OUTBOX_PAGE_SIZE, max_id=max_id, min_id=min_id)
    if max_id:
        page_id = f"{base}?page=true&max_id={max_id}"
    elif min_id:
        page_id = f"{base}?page=true&min_id={min_id}"
    else:
        page_id = f"{base}?page=true"
    result = _page(page_id, base, [build_create(post) for post in posts])

    full = len(posts) == OUTBOX_PAGE_SIZE
    # Uma página aberta por min_id sempre tem o próprio cursor como post mais antigo
    if posts and (full or (min_id and not max_id)):
        result["next"] = f"{base}?page=true&max_id={posts[-1].id}"
    if posts and (max_id or (min_id and full)):
        result["prev"] = f"{base}?page=true&min_id={posts[0].id}"
    return result


def _page_number(page: str) -> int:
    try:
        return max(int(page), 1)
    except ValueError:
        return 1


async def followers(session: AsyncSession, handle: str, page: str | None = None) -> dict:
    base = urls.followers_url(handle)
    if not page:
        total = await store.count_followers(session, handle)
        return _collection(base, total, f"{base}?page=1")

    number = _page_number(page)
    items = await store.followers_page(session, handle, ACTOR_PAGE_SIZE, (number - 1) * ACTOR_PAGE_SIZE)
    return _paged(base, number, items)


async def following(session: AsyncSession, handle: str, page: str | None = None) -> dict:
    base = urls.following_url(handle)
    if not page:
        total = await store.count_accepted_following(session, handle)
        return _collection(base, total, f"{base}?page=1")

    number = _page_number(page)
    items = await store.following_page(session, handle, ACTOR_PAGE_SIZE, (number - 1) * ACTOR_PAGE_SIZE)
    return _paged(base, number, items)


def _paged(base: str, number: int, items: list[str]) -> dict:
    result = _page(f"{base}?page={number}", base, items)
    if len(items) == ACTOR_PAGE_SIZE:
        result["next"] = f"{base}?page={number + 1}"
    if number > 1:
        result["prev"] = f"{base}?page={number - 1}"
    return result
