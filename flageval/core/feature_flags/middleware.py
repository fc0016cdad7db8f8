"""ASGI middleware injecting an evaluation context into each HTTP request."""

from __future__ import annotations

import logging
from typing import Any, Optional

from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.logging.structured import bind_evaluation_context

logger = logging.getLogger(__name__)


class FeatureFlagContextMiddleware:
    """Stores an :class:`EvaluationContext` at ``scope["state"]["feature_context"]``.

    The context is built from the ``x-user-id``, ``x-tenant-id``,
    ``x-request-id`` and ``user-agent`` headers.
    """

    def __init__(self, app: Any, environment: Optional[str] = None):
        self.app = app
        self.environment = environment

    async def __call__(self, scope: dict, receive: Any, send: Any) -> None:
        if scope["type"] == "http":
            headers = dict(scope.get("headers", []))
            user_id = headers.get(b"x-user-id", b"").decode() or None
            tenant_id = headers.get(b"x-tenant-id", b"").decode() or None
            request_id = headers.get(b"x-request-id", b"").decode() or None
            user_agent = headers.get(b"user-agent", b"").decode()

            system = {
                "device_type": "mobile" if "mobile" in user_agent.lower() else "desktop",
                "user_agent": user_agent,
            }
            if self.environment:
                system["environment"] = self.environment
            if request_id:
                system["request_id"] = request_id
            client = scope.get("client")
            if client:
                system["ip_address"] = client[0]

            context = EvaluationContext(
                targeting_key=user_id or tenant_id or "anonymous",
                user={"user_id": user_id} if user_id else {},
                system=system,
                attributes={"tenant_id": tenant_id} if tenant_id else {},
            )
            scope["state"] = scope.get("state") or {}
            scope["state"]["feature_context"] = context
            bind_evaluation_context(targeting_key=context.targeting_key, request_id=request_id)

        await self.app(scope, receive, send)


__all__ = ["FeatureFlagContextMiddleware"]
