"""URLs canônicas das contas e objetos locais."""

from gitpub.config import settings

PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
ACTIVITY_JSON = "application/activity+json"
ACCEPT_ACTIVITY = "application/activity+json, application/ld+json"


def actor_url(handle: str) -> str:
    return f"{settings.base_url}/users/{handle}"


def key_id(handle: str) -> str:
    return f"{actor_url(handle)}#main-key"


def inbox_url(handle: str) -> str:
    return f"{actor_url(handle)}/inbox"


def outbox_url(handle: str) -> str:
    return f"{actor_url(handle)}/outbox"


def followers_url(handle: str) -> str:
    return f"{actor_url(handle)}/followers"


def following_url(handle: str) -> str:
    return f"{actor_url(handle)}/following"


def shared_inbox_url() -> str:
    return f"{settings.base_url}/inbox"


def profile_url(handle: str) -> str:
    return f"{settings.base_url}/@{handle}"


def post_url(handle: str, post_id: str) -> str:
    return f"{actor_url(handle)}/posts/{post_id}"


def post_permalink(handle: str, post_id: str) -> str:
    return f"{profile_url(handle)}/{post_id}"


def tag_url(tag: str) -> str:
    return f"{settings.base_url}/tags/{tag}"


def media_url(handle: str, path: str) -> str:
    return f"{settings.base_url}/media/{handle}/{path}"


def local_handle(url: str) -> str | None:
    """Devolve o handle se `url` for o id de um actor local, senão None."""
    prefix = f"{settings.base_url}/users/"
    if not isinstance(url, str) or not url.startswith(prefix):
        return None
    handle = url[len(prefix):]
    if not handle or "/" in handle or "#" in handle or "?" in handle:
        return None
    return handle
