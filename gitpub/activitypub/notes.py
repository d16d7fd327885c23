"""
gitpub/activitypub/notes.py

Serialização de posts locais como objetos ActivityPub (Note e o Create
que o envolve). Usado pelo outbox, pelas rotas de posts e pelo publish.
"""

from gitpub.activitypub import urls
from gitpub.activitypub.urls import AS_CONTEXT, PUBLIC
from gitpub.models.post import Post, Visibility
from gitpub.utils import isoformat

_IMAGE = ("jpg", "jpeg", "png", "gif", "webp")
_VIDEO = ("mp4", "webm")
_AUDIO = ("mp3", "ogg", "wav")


def addressing(handle: str, visibility: str) -> tuple[list[str], list[str]]:
    """
    to/cc conforme a visibilidade:
    public → to Public, cc seguidores; unlisted → o inverso;
    followers → só seguidores; direct → vazio (destinatários não modelados).
    """
    followers = urls.followers_url(handle)
    if visibility == Visibility.PUBLIC.value:
        return [PUBLIC], [followers]
    if visibility == Visibility.UNLISTED.value:
        return [followers], [PUBLIC]
    if visibility == Visibility.FOLLOWERS.value:
        return [followers], []
    return [], []


def attachment_for(url: str) -> dict:
    ext = url.rsplit(".", 1)[-1].lower() if "." in url else ""
    if ext in _IMAGE:
        kind, media_type = "Image", f"image/{'jpeg' if ext == 'jpg' else ext}"
    elif ext in _VIDEO:
        kind, media_type = "Video", f"video/{ext}"
    elif ext in _AUDIO:
        kind, media_type = "Audio", f"audio/{ext}"
    else:
        kind, media_type = "Document", "application/octet-stream"
    return {"type": kind, "mediaType": media_type, "url": url}


def build_note(post: Post) -> dict:
    to, cc = addressing(post.handle, post.visibility)
    note = {
        "@context": AS_CONTEXT,
        "id": urls.post_url(post.handle, post.id),
        "type": "Note",
        "attributedTo": urls.actor_url(post.handle),
        "content": post.content_html,
        "published": isoformat(post.published_at),
        "to": to,
        "cc": cc,
        "url": urls.post_permalink(post.handle, post.id),
    }

    if post.in_reply_to:
        note["inReplyTo"] = post.in_reply_to
    if post.conversation:
        note["conversation"] = post.conversation
    if post.sensitive:
        note["sensitive"] = True
    if post.summary:
        # Content warning
        note["summary"] = post.summary

    if post.tags:
        note["tag"] = [
            {"type": "Hashtag", "href": urls.tag_url(tag), "name": f"#{tag}"}
            for tag in post.tags
        ]
    if post.media_urls:
        note["attachment"] = [attachment_for(url) for url in post.media_urls]

    return note


def build_create(post: Post) -> dict:
    note = build_note(post)
    return {
        "@context": AS_CONTEXT,
        "id": f"{note['id']}/activity",
        "type": "Create",
        "actor": note["attributedTo"],
        "published": note["published"],
        "to": note["to"],
        "cc": note["cc"],
        "object": note,
    }
