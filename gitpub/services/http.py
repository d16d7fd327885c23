"""
gitpub/services/http.py

Fábrica do cliente HTTP usado em toda requisição de saída (fetch de
actors, WebFinger, entregas). Centralizar aqui mantém timeout e
User-Agent consistentes e dá aos testes um único ponto para substituir
o transporte.
"""

import httpx

from gitpub.config import settings


def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.http_timeout,
        headers={"User-Agent": settings.outbound_user_agent()},
        follow_redirects=True,
    )
