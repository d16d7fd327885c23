"""Documentos de descoberta: WebFinger (JRD) e NodeInfo 2.1."""

from gitpub.activitypub import urls
from gitpub.config import VERSION, settings

NODEINFO_REL = "http://nodeinfo.diaspora.software/ns/schema/2.1"
NODEINFO_PROFILE = 'application/json; profile="http://nodeinfo.diaspora.software/ns/schema/2.1#"'
PROFILE_PAGE_REL = "http://webfinger.net/rel/profile-page"


def parse_resource(resource: str) -> tuple[str, str] | None:
    """`acct:user@domain` → (user, domain); qualquer outra forma → None."""
    if not resource or not resource.startswith("acct:"):
        return None
    user, _, domain = resource[len("acct:"):].partition("@")
    return user, domain


def webfinger_document(resource: str, handle: str) -> dict:
    return {
        "subject": resource,
        "aliases": [urls.actor_url(handle), urls.profile_url(handle)],
        "links": [
            {"rel": "self", "type": urls.ACTIVITY_JSON, "href": urls.actor_url(handle)},
            {"rel": PROFILE_PAGE_REL, "type": "text/html", "href": urls.profile_url(handle)},
        ],
    }


def nodeinfo_links() -> dict:
    return {"links": [{"rel": NODEINFO_REL, "href": f"{settings.base_url}/nodeinfo/2.1"}]}


def nodeinfo_document(users: int, local_posts: int) -> dict:
    return {
        "version": "2.1",
        "software": {"name": "gitpub", "version": VERSION},
        "protocols": ["activitypub"],
        "services": {"inbound": [], "outbound": []},
        "usage": {
            "users": {"total": users, "activeMonth": users, "activeHalfyear": users},
            "localPosts": local_posts,
        },
        "openRegistrations": False,
        "metadata": {},
    }
