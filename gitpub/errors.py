"""
gitpub/errors.py

Taxonomia de erros da federação.

- SignatureInvalid  → 401 no inbox, nada é gravado
- ActorUnreachable  → 400 no Follow recebido; propagado em follow/unfollow locais
- ProtocolError     → documento remoto sem os campos esperados
- DeliveryFailure   → nunca chega a quem disparou a entrega: vira item da fila
- KeyNotConfigured  → conta sem chave privada configurada
"""


class FederationError(Exception):
    pass


class SignatureInvalid(FederationError):
    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ActorUnreachable(FederationError):
    def __init__(self, url: str, status: int | None = None, detail: str = ""):
        self.url = url
        self.status = status
        message = f"Could not fetch {url}"
        if status is not None:
            message += f": HTTP {status}"
        elif detail:
            message += f": {detail}"
        super().__init__(message)


class ActorNotFound(ActorUnreachable):
    pass


class ProtocolError(FederationError):
    pass


class DeliveryFailure(FederationError):
    def __init__(self, inbox: str, status: int | None = None, detail: str = ""):
        self.inbox = inbox
        self.status = status
        super().__init__(f"HTTP {status}" if status is not None else detail or "delivery failed")


class KeyNotConfigured(FederationError):
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Private key not found for account: {handle}")
