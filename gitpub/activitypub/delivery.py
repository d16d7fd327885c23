"""
gitpub/activitypub/delivery.py

Entrega de atividades para inboxes remotos, com garantia at-least-once.

- deliver()     → uma tentativa imediata; se falhar, a atividade vai para a
                  fila persistente (delivery_queue) e quem chamou segue normal
- broadcast()   → deliver() para cada inbox distinto dos seguidores,
                  preferindo o shared inbox
- drain_queue() → varredura agendada: reenvia itens vencidos, apaga os
                  entregues e reagenda os que falharem com backoff exponencial
"""

import json
import logging
from datetime import datetime, timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from gitpub import store
from gitpub.activitypub.keys import get_signing_key
from gitpub.activitypub.signatures import sign_request
from gitpub.config import settings
from gitpub.errors import DeliveryFailure, KeyNotConfigured
from gitpub.services import http
from gitpub.utils import utcnow

log = logging.getLogger(__name__)


def backoff_delay(attempts: int) -> int:
    """Segundos até a próxima tentativa após `attempts` falhas na fila."""
    return min(settings.delivery_base_delay * 2 ** attempts, settings.delivery_max_delay)


async def send_activity(handle: str, activity: dict, inbox: str) -> None:
    """
    Um POST assinado com a chave de `handle`.
    Levanta DeliveryFailure para status não-2xx ou falha de rede.
    """
    signing_key = get_signing_key(handle)
    body = json.dumps(activity).encode()
    # Cada alvo tem seu próprio Host/Date, então a assinatura é refeita por inbox
    headers = sign_request(inbox, "POST", body, signing_key.private_key, signing_key.key_id)

    try:
        async with http.http_client() as client:
            response = await client.post(inbox, content=body, headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise DeliveryFailure(inbox, detail=f"{type(exc).__name__}: {exc}") from exc

    if not response.is_success:
        raise DeliveryFailure(inbox, status=response.status_code)


async def deliver(session: AsyncSession, handle: str, activity: dict, inbox: str) -> bool:
    """Tenta entregar agora; em caso de falha enfileira e devolve False. Nunca levanta."""
    try:
        await send_activity(handle, activity, inbox)
    except Exception as exc:
        if isinstance(exc, (DeliveryFailure, KeyNotConfigured)):
            log.warning(f"Falha ao entregar {activity.get('type')} para {inbox}: {exc}; enfileirado")
        else:
            log.error(f"Erro inesperado ao entregar para {inbox}: {exc}; enfileirado", exc_info=True)
        await store.enqueue_delivery(
            session,
            handle=handle,
            activity=activity,
            target_inbox=inbox,
            next_attempt_at=utcnow() + timedelta(seconds=settings.delivery_base_delay),
            last_error=str(exc),
        )
        return False

    log.info(f"{activity.get('type')} entregue em {inbox}")
    return True


async def broadcast(session: AsyncSession, handle: str, activity: dict) -> int:
    """Entrega `activity` a todos os inboxes distintos dos seguidores de `handle`."""
    inboxes = await store.follower_inboxes(session, handle)
    for inbox in inboxes:
        await deliver(session, handle, activity, inbox)
    log.info(f"Broadcast de {activity.get('type')} de {handle}: {len(inboxes)} inbox(es)")
    return len(inboxes)


async def drain_queue(session: AsyncSession, now: datetime | None = None) -> int:
    """
    Processa até `delivery_batch_size` itens vencidos da fila.

    Cada item é reservado com um UPDATE condicional (lease) antes do envio,
    então drenagens sobrepostas não processam o mesmo item. Devolve quantos
    itens foram entregues mais quantos atingiram o limite de tentativas.
    """
    now = now or utcnow()
    items = await store.due_deliveries(
        session, now, settings.delivery_max_attempts, settings.delivery_batch_size
    )
    lease_until = now + timedelta(seconds=settings.delivery_lease)

    processed = 0
    for item in items:
        if not await store.claim_delivery(session, item.id, now, lease_until):
            continue

        try:
            await send_activity(item.handle, item.activity_json, item.target_inbox)
        except Exception as exc:
            # Um item com chave ou inbox inválidos não interrompe o resto do lote
            if not isinstance(exc, (DeliveryFailure, KeyNotConfigured)):
                log.error(f"Erro inesperado no item {item.id}: {exc}", exc_info=True)
            attempts = item.attempts + 1
            await store.reschedule_delivery(
                session,
                item.id,
                next_attempt_at=now + timedelta(seconds=backoff_delay(attempts)),
                last_error=str(exc),
            )
            if attempts >= settings.delivery_max_attempts:
                log.warning(
                    f"Desistindo de entregar item {item.id} em {item.target_inbox} "
                    f"após {attempts} tentativas: {exc}"
                )
                processed += 1
            else:
                log.warning(f"Nova falha no item {item.id} ({attempts}x): {exc}")
            continue

        await store.delete_delivery(session, item.id)
        processed += 1

    if items:
        log.info(f"Fila drenada: {processed} de {len(items)} item(ns) finalizados")
    return processed
