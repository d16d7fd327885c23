"""
gitpub/activitypub/actor.py

Documento Person de uma conta local.
"""

from gitpub.activitypub import urls
from gitpub.activitypub.keys import get_key_store, public_key_pem
from gitpub.errors import KeyNotConfigured
from gitpub.models.account import Account
from gitpub.utils import isoformat

ACTOR_CONTEXT = [
    urls.AS_CONTEXT,
    "https://w3id.org/security/v1",
    {
        "manuallyApprovesFollowers": "as:manuallyApprovesFollowers",
        "discoverable": "toot:discoverable",
        "toot": "http://joinmastodon.org/ns#",
        "schema": "http://schema.org#",
        "PropertyValue": "schema:PropertyValue",
        "value": "schema:value",
    },
]


def _property_value(field: dict) -> dict:
    value = str(field.get("value", ""))
    if value.startswith("http"):
        # Link verificável (rel="me")
        value = f'<a href="{value}" target="_blank" rel="nofollow noopener noreferrer me">{value}</a>'
    return {"type": "PropertyValue", "name": field.get("name", ""), "value": value}


def _image(url: str) -> dict:
    return {"type": "Image", "mediaType": "image/png", "url": url}


def account_public_key(account: Account) -> str | None:
    """Chave publicada na conta; senão, derivada da chave privada configurada."""
    if account.public_key:
        return account.public_key
    try:
        return public_key_pem(get_key_store().private_key(account.handle))
    except KeyNotConfigured:
        return None


def build_actor(account: Account) -> dict:
    handle = account.handle
    actor_url = urls.actor_url(handle)

    actor = {
        "@context": ACTOR_CONTEXT,
        "id": actor_url,
        "type": "Person",
        "preferredUsername": handle,
        "name": account.name or handle,
        "summary": account.summary or "",
        "url": urls.profile_url(handle),
        "inbox": urls.inbox_url(handle),
        "outbox": urls.outbox_url(handle),
        "followers": urls.followers_url(handle),
        "following": urls.following_url(handle),
        "publicKey": {
            "id": urls.key_id(handle),
            "owner": actor_url,
            "publicKeyPem": account_public_key(account),
        },
        "manuallyApprovesFollowers": bool(account.manually_approves_followers),
        "discoverable": bool(account.discoverable),
        "published": isoformat(account.created_at),
        "endpoints": {"sharedInbox": urls.shared_inbox_url()},
    }

    if account.icon_url:
        actor["icon"] = _image(account.icon_url)
    if account.image_url:
        actor["image"] = _image(account.image_url)
    if account.fields:
        actor["attachment"] = [_property_value(field) for field in account.fields]

    return actor
