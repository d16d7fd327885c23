"""
Testes para gitpub/activitypub/delivery.py

Cobre:
- backoff_delay cresce estritamente até o teto de 86400s e fica constante
- send_activity assina o POST com a chave da conta e levanta DeliveryFailure
- deliver: sucesso não enfileira; falha (status, rede, chave ausente)
  enfileira com next_attempt_at ≈ agora + 60s e nunca levanta
- drain_queue: sucesso apaga o item; falha incrementa attempts e aplica backoff
- Três falhas seguidas na fila → attempts=3 e próxima tentativa em ≈ 480s
- Itens no limite de tentativas ficam na tabela e saem da seleção
- Itens ainda não vencidos não são processados
- Item reservado por outra drenagem não é reenviado
- Chave PEM inválida ou inbox com URL inválida reagendam o próprio item
  sem interromper o lote
- broadcast entrega uma vez por shared inbox, mesmo com vários seguidores
"""

import json
from datetime import timedelta

import pytest
from pydantic import SecretStr
from sqlalchemy import select

from gitpub import store
from gitpub.activitypub.delivery import backoff_delay, broadcast, deliver, drain_queue, send_activity
from gitpub.activitypub.signatures import parse_signature_header
from gitpub.errors import DeliveryFailure, KeyNotConfigured
from gitpub.models.delivery_queue import DeliveryQueueItem
from gitpub.utils import as_utc, utcnow

DEAD_INBOX = "https://dead.example/inbox"
ACTIVITY = {
    "@context": "https://www.w3.org/ns/activitystreams",
    "id": "https://ap.test/users/alice/activities/1",
    "type": "Create",
    "actor": "https://ap.test/users/alice",
    "object": {"type": "Note", "content": "oi"},
}


async def _queue(session) -> list[DeliveryQueueItem]:
    session.expire_all()
    return list(await session.scalars(select(DeliveryQueueItem)))


# ---------------------------------------------------------------------------
# backoff_delay
# ---------------------------------------------------------------------------


def test_backoff_grows_until_cap():
    delays = [backoff_delay(n) for n in range(1, 11)]

    assert delays[0] == 120
    assert all(a < b for a, b in zip(delays, delays[1:]))


def test_backoff_is_capped_at_one_day():
    assert backoff_delay(11) == 86400
    assert backoff_delay(12) == 86400
    assert backoff_delay(30) == 86400


def test_backoff_three_attempts_is_480_seconds():
    assert backoff_delay(3) == 480


# ---------------------------------------------------------------------------
# send_activity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_activity_signs_with_account_key(remote):
    await send_activity("alice", ACTIVITY, DEAD_INBOX)

    request = remote.posts(DEAD_INBOX)[0]
    params = parse_signature_header(request.headers["signature"])
    assert params["keyId"] == "https://ap.test/users/alice#main-key"
    assert request.headers["content-type"] == "application/activity+json"
    assert json.loads(request.content) == ACTIVITY


@pytest.mark.asyncio
async def test_send_activity_raises_on_error_status(remote):
    remote.set_inbox(DEAD_INBOX, 500)

    with pytest.raises(DeliveryFailure) as exc_info:
        await send_activity("alice", ACTIVITY, DEAD_INBOX)
    assert exc_info.value.status == 500


@pytest.mark.asyncio
async def test_send_activity_raises_on_network_error(remote):
    remote.set_inbox(DEAD_INBOX, None)

    with pytest.raises(DeliveryFailure):
        await send_activity("alice", ACTIVITY, DEAD_INBOX)


@pytest.mark.asyncio
async def test_send_activity_invalid_inbox_url_raises_delivery_failure(remote):
    with pytest.raises(DeliveryFailure):
        await send_activity("alice", ACTIVITY, "https://bad.example/in\x00box")
    assert remote.posts() == []


@pytest.mark.asyncio
async def test_send_activity_without_key_raises(remote):
    with pytest.raises(KeyNotConfigured):
        await send_activity("zed", ACTIVITY, DEAD_INBOX)


# ---------------------------------------------------------------------------
# deliver
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deliver_success_does_not_queue(session, remote):
    assert await deliver(session, "alice", ACTIVITY, DEAD_INBOX) is True
    assert await _queue(session) == []


@pytest.mark.asyncio
async def test_deliver_failure_queues_for_sixty_seconds(session, remote):
    remote.set_inbox(DEAD_INBOX, 500)
    before = utcnow()

    assert await deliver(session, "alice", ACTIVITY, DEAD_INBOX) is False

    [item] = await _queue(session)
    assert item.attempts == 0
    assert item.target_inbox == DEAD_INBOX
    assert item.activity_json == ACTIVITY
    assert item.last_error == "HTTP 500"
    delay = (as_utc(item.next_attempt_at) - before).total_seconds()
    assert 59 <= delay <= 62


@pytest.mark.asyncio
async def test_deliver_network_error_is_queued(session, remote):
    remote.set_inbox(DEAD_INBOX, None)

    assert await deliver(session, "alice", ACTIVITY, DEAD_INBOX) is False
    assert len(await _queue(session)) == 1


@pytest.mark.asyncio
async def test_deliver_missing_key_is_queued(session, remote):
    assert await deliver(session, "zed", ACTIVITY, DEAD_INBOX) is False

    [item] = await _queue(session)
    assert "zed" in item.last_error
    assert remote.posts() == []


# ---------------------------------------------------------------------------
# drain_queue
# ---------------------------------------------------------------------------


async def _enqueue(session, due, attempts=0):
    await store.enqueue_delivery(session, "alice", ACTIVITY, DEAD_INBOX, next_attempt_at=due)
    if attempts:
        [item] = await _queue(session)
        item.attempts = attempts
        await session.commit()


@pytest.mark.asyncio
async def test_drain_success_deletes_item(session, remote):
    now = utcnow()
    await _enqueue(session, now - timedelta(seconds=1))

    assert await drain_queue(session, now) == 1
    assert await _queue(session) == []
    assert len(remote.posts(DEAD_INBOX)) == 1


@pytest.mark.asyncio
async def test_drain_failure_increments_attempts(session, remote):
    remote.set_inbox(DEAD_INBOX, 503)
    now = utcnow()
    await _enqueue(session, now - timedelta(seconds=1))

    assert await drain_queue(session, now) == 0

    [item] = await _queue(session)
    assert item.attempts == 1
    assert item.last_error == "HTTP 503"
    assert as_utc(item.next_attempt_at) == now + timedelta(seconds=120)


@pytest.mark.asyncio
async def test_three_consecutive_failures_back_off_480_seconds(session, remote):
    remote.set_inbox(DEAD_INBOX, 500)
    now = utcnow()
    await _enqueue(session, now)

    for _ in range(3):
        [item] = await _queue(session)
        now = as_utc(item.next_attempt_at)
        await drain_queue(session, now)

    [item] = await _queue(session)
    assert item.attempts == 3
    assert (as_utc(item.next_attempt_at) - now).total_seconds() == pytest.approx(480)


@pytest.mark.asyncio
async def test_consecutive_failures_grow_delay_until_cap(session, remote, patch_settings):
    patch_settings.delivery_max_attempts = 20
    remote.set_inbox(DEAD_INBOX, 500)
    now = utcnow()
    await _enqueue(session, now)

    delays = []
    for _ in range(12):
        [item] = await _queue(session)
        now = as_utc(item.next_attempt_at)
        await drain_queue(session, now)
        [item] = await _queue(session)
        delays.append((as_utc(item.next_attempt_at) - now).total_seconds())

    capped = delays.index(86400)
    assert all(a < b for a, b in zip(delays[:capped], delays[1:capped + 1]))
    assert set(delays[capped:]) == {86400}


@pytest.mark.asyncio
async def test_drain_counts_item_reaching_cap_and_keeps_it(session, remote):
    remote.set_inbox(DEAD_INBOX, 500)
    now = utcnow()
    await _enqueue(session, now, attempts=9)

    assert await drain_queue(session, now) == 1

    [item] = await _queue(session)
    assert item.attempts == 10

    later = as_utc(item.next_attempt_at) + timedelta(seconds=1)
    assert await drain_queue(session, later) == 0
    assert len(remote.posts(DEAD_INBOX)) == 1


@pytest.mark.asyncio
async def test_drain_skips_items_not_due(session, remote):
    now = utcnow()
    await _enqueue(session, now + timedelta(minutes=5))

    assert await drain_queue(session, now) == 0
    assert remote.posts() == []


@pytest.mark.asyncio
async def test_drain_respects_batch_size(session, remote, patch_settings):
    patch_settings.delivery_batch_size = 2
    now = utcnow()
    for _ in range(3):
        await _enqueue(session, now - timedelta(seconds=1))

    assert await drain_queue(session, now) == 2
    assert len(await _queue(session)) == 1


@pytest.mark.asyncio
async def test_claimed_item_is_not_sent_twice(session, remote):
    now = utcnow()
    await _enqueue(session, now - timedelta(seconds=1))
    [item] = await _queue(session)

    # Outra drenagem reservou o item primeiro
    assert await store.claim_delivery(session, item.id, now, now + timedelta(seconds=300))

    assert await drain_queue(session, now) == 0
    assert remote.posts() == []


@pytest.mark.asyncio
async def test_drain_continues_after_malformed_key(session, remote, patch_settings, rsa_private_key_pem):
    """Chave PEM inválida reagenda só o próprio item; o resto do lote segue."""
    patch_settings.private_keys = {
        "alice": SecretStr(rsa_private_key_pem),
        "broken": SecretStr("não é uma chave"),
    }
    now = utcnow()
    await store.enqueue_delivery(session, "broken", ACTIVITY, DEAD_INBOX, next_attempt_at=now - timedelta(seconds=2))
    await _enqueue(session, now - timedelta(seconds=1))

    assert await drain_queue(session, now) == 1

    [item] = await _queue(session)
    assert item.handle == "broken"
    assert item.attempts == 1
    assert item.last_error
    assert as_utc(item.next_attempt_at) == now + timedelta(seconds=120)
    assert len(remote.posts(DEAD_INBOX)) == 1


@pytest.mark.asyncio
async def test_drain_reschedules_invalid_inbox_url(session, remote):
    now = utcnow()
    bad_inbox = "https://bad.example/in\x00box"
    await store.enqueue_delivery(session, "alice", ACTIVITY, bad_inbox, next_attempt_at=now - timedelta(seconds=1))

    assert await drain_queue(session, now) == 0

    [item] = await _queue(session)
    assert item.attempts == 1
    assert "InvalidURL" in item.last_error


@pytest.mark.asyncio
async def test_deliver_with_malformed_key_is_queued(session, remote, patch_settings):
    patch_settings.private_keys = {"alice": SecretStr("lixo")}

    assert await deliver(session, "alice", ACTIVITY, DEAD_INBOX) is False
    assert len(await _queue(session)) == 1


# ---------------------------------------------------------------------------
# broadcast
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_broadcast_deduplicates_shared_inbox(session, remote):
    for name in ("bob", "carol"):
        await store.upsert_follower(
            session,
            "alice",
            f"https://remote.example/users/{name}",
            f"https://remote.example/users/{name}/inbox",
            shared_inbox_url="https://remote.example/inbox",
        )
    await store.upsert_follower(session, "alice", "https://solo.example/users/dan", "https://solo.example/users/dan/inbox")

    assert await broadcast(session, "alice", ACTIVITY) == 2

    assert len(remote.posts("https://remote.example/inbox")) == 1
    assert len(remote.posts("https://solo.example/users/dan/inbox")) == 1
    assert remote.posts("https://remote.example/users/bob/inbox") == []


@pytest.mark.asyncio
async def test_broadcast_signs_each_target_separately(session, remote):
    await store.upsert_follower(session, "alice", "https://a.example/users/x", "https://a.example/inbox")
    await store.upsert_follower(session, "alice", "https://b.example/users/y", "https://b.example/inbox")

    await broadcast(session, "alice", ACTIVITY)

    hosts = sorted(request.headers["host"] for request in remote.posts())
    assert hosts == ["a.example", "b.example"]


@pytest.mark.asyncio
async def test_broadcast_failure_queues_only_failed_target(session, remote):
    await store.upsert_follower(session, "alice", "https://a.example/users/x", "https://a.example/inbox")
    await store.upsert_follower(session, "alice", "https://b.example/users/y", "https://b.example/inbox")
    remote.set_inbox("https://b.example/inbox", 500)

    await broadcast(session, "alice", ACTIVITY)

    [item] = await _queue(session)
    assert item.target_inbox == "https://b.example/inbox"


@pytest.mark.asyncio
async def test_broadcast_without_followers(session, remote):
    assert await broadcast(session, "alice", ACTIVITY) == 0
    assert remote.posts() == []
