"""
workers/delivery_worker.py

Worker assíncrono que drena a fila de entregas em intervalos regulares.

Fluxo:
1. Dorme `settings.drain_interval` segundos
2. Abre uma sessão própria (fora de qualquer request)
3. Chama drain_queue(): reenvia os itens vencidos com backoff exponencial
"""

import asyncio
import logging

from gitpub import database
from gitpub.activitypub.delivery import drain_queue
from gitpub.config import settings

log = logging.getLogger(__name__)


async def drain_once() -> int:
    async with database.async_session_factory() as session:
        return await drain_queue(session)


async def run_worker(interval: float | None = None) -> None:
    interval = settings.drain_interval if interval is None else interval
    log.info(f"Worker de entregas iniciado (intervalo de {interval}s)")
    while True:
        await asyncio.sleep(interval)
        try:
            processed = await drain_once()
            if processed:
                log.info(f"Worker: {processed} item(ns) da fila finalizados")
        except Exception as e:
            log.error(f"Erro no worker: {e}", exc_info=True)
