from __future__ import annotations

import logging

from fastapi import Depends, Header, Request, WebSocket

from lorawan_as.services.lorawan.context import ServerContext
from lorawan_as.services.lorawan.enums import Action, Decision, ErrorKind
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.ports import Identity, Target

__all__ = ["get_context", "get_ws_context", "require_identity", "authorize", "bearer_token"]

logger = logging.getLogger(__name__)


def get_context(request: Request) -> ServerContext:
    return request.app.state.ctx


def get_ws_context(websocket: WebSocket) -> ServerContext:
    return websocket.app.state.ctx


def bearer_token(authorization: str | None, x_lorawan_token: str | None) -> str | None:
    """
    Accept either ``Authorization: Bearer <token>`` or ``X-LoRaWAN-Token``.
    """
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return x_lorawan_token


async def require_identity(
    ctx: ServerContext = Depends(get_context),
    x_lorawan_token: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> Identity:
    identity = ctx.authorizer.identify(bearer_token(authorization, x_lorawan_token))
    if identity is None:
        raise LoRaWANError(ErrorKind.UNAUTHENTICATED, "invalid or missing token")
    return identity


def authorize(ctx: ServerContext, identity: Identity, action: Action, target: Target) -> None:
    if ctx.authorizer.check(identity, action, target) is Decision.ALLOW:
        return
    logger.warning(
        "permission denied",
        extra={"extra": {"subject": identity.subject, "action": action.value, "target": target.kind, "id": target.id}},
    )
    raise LoRaWANError(ErrorKind.PERMISSION_DENIED, f"{action.value} on {target.kind} is not allowed")
