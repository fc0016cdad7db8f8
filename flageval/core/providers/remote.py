"""Remote flag backend speaking the Flipt evaluation REST API.

Boolean flags use ``POST /evaluate/v1/boolean``; every other type goes through
``POST /evaluate/v1/variant``, with numbers parsed from the variant key and
objects decoded from the variant attachment.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from flageval.core.config import ProviderSettings
from flageval.core.errors import ProviderError
from flageval.core.feature_flags.context import EvaluationContext
from flageval.core.feature_flags.types import EvaluationReason
from flageval.core.providers.base import FlagProvider, ProviderType, ResolutionDetails

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:8080"

_REASONS = {
    "MATCH_EVALUATION_REASON": EvaluationReason.TARGETING_MATCH,
    "DEFAULT_EVALUATION_REASON": EvaluationReason.DEFAULT,
    "FLAG_DISABLED_EVALUATION_REASON": EvaluationReason.DISABLED,
    "UNKNOWN_EVALUATION_REASON": EvaluationReason.STATIC,
}


def flatten_context(context: EvaluationContext) -> Dict[str, str]:
    """Flipt only accepts string context values."""
    flat: Dict[str, Any] = {}
    for bag in (context.user, context.system):
        for key, value in bag.items():
            if key == "custom_attributes" and isinstance(value, dict):
                flat.update(value)
            elif key != "timestamp":
                flat[key] = value
    for key, value in context.experiment.items():
        flat[f"experiment_{key}"] = value
    flat.update(context.attributes)

    result: Dict[str, str] = {}
    for key, value in flat.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            result[key] = json.dumps(value, sort_keys=True)
        else:
            result[key] = str(value)
    return result


class RemoteProvider(FlagProvider):
    provider_type = ProviderType.REMOTE

    def __init__(
        self,
        settings: ProviderSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings)
        self.endpoint = (settings.endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.namespace = str(settings.options.get("namespace", "default"))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _initialize_impl(self) -> None:
        headers = {"Accept": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.endpoint,
            headers=headers,
            timeout=httpx.Timeout(self.settings.timeout_ms / 1000),
            transport=self._transport,
        )
        logger.info(f"Remote provider '{self.name}' targeting {self.endpoint}")

    async def _dispose_impl(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _health_check_impl(self) -> bool:
        if self._client is None:
            return False
        resp = await self._client.get("/health")
        return resp.status_code == 200

    async def _evaluate(self, path: str, flag_key: str, context: EvaluationContext) -> Optional[Dict[str, Any]]:
        """POST an evaluation request; None means the backend does not know the flag."""
        self._ensure_initialized(flag_key)
        payload = {
            "namespaceKey": self.namespace,
            "flagKey": flag_key,
            "entityId": context.identity,
            "context": flatten_context(context),
        }
        try:
            resp = await self._client.post(path, json=payload)  # type: ignore[union-attr]
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Remote provider returned {exc.response.status_code} for '{flag_key}'",
                provider_name=self.name,
                flag_key=flag_key,
                cause=exc,
            ) from exc
        except (httpx.RequestError, ValueError) as exc:
            raise ProviderError(
                f"Remote provider request failed for '{flag_key}': {exc}",
                provider_name=self.name,
                flag_key=flag_key,
                cause=exc,
            ) from exc

    async def _resolve_variant(
        self,
        flag_key: str,
        default_value: Any,
        context: EvaluationContext,
        convert: Callable[[Dict[str, Any]], Any],
    ) -> ResolutionDetails[Any]:
        data = await self._evaluate("/evaluate/v1/variant", flag_key, context)
        if data is None or not data.get("match"):
            reason = _REASONS.get((data or {}).get("reason", ""), EvaluationReason.DEFAULT)
            return ResolutionDetails(value=default_value, reason=reason, variant="default")

        try:
            value = convert(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(
                f"Cannot convert variant for '{flag_key}': {exc}",
                provider_name=self.name,
                flag_key=flag_key,
                cause=exc,
            ) from exc

        return ResolutionDetails(
            value=value,
            reason=_REASONS.get(data.get("reason", ""), EvaluationReason.TARGETING_MATCH),
            variant=data.get("variantKey"),
            metadata={"segment_keys": list(data.get("segmentKeys") or [])},
        )

    async def resolve_boolean(self, flag_key: str, default_value: bool, context: EvaluationContext) -> ResolutionDetails[bool]:
        data = await self._evaluate("/evaluate/v1/boolean", flag_key, context)
        if data is None:
            return ResolutionDetails(value=default_value, reason=EvaluationReason.DEFAULT, variant="default")
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            raise ProviderError(
                f"Remote provider sent no boolean for '{flag_key}'",
                provider_name=self.name,
                flag_key=flag_key,
            )
        return ResolutionDetails(
            value=enabled,
            reason=_REASONS.get(data.get("reason", ""), EvaluationReason.STATIC),
            variant="on" if enabled else "off",
        )

    async def resolve_string(self, flag_key: str, default_value: str, context: EvaluationContext) -> ResolutionDetails[str]:
        return await self._resolve_variant(flag_key, default_value, context, lambda d: str(d["variantKey"]))

    async def resolve_number(self, flag_key: str, default_value: float, context: EvaluationContext) -> ResolutionDetails[float]:
        def to_number(data: Dict[str, Any]) -> float:
            raw = str(data["variantKey"])
            return int(raw) if raw.lstrip("-").isdigit() else float(raw)

        return await self._resolve_variant(flag_key, default_value, context, to_number)

    async def resolve_object(self, flag_key: str, default_value: Any, context: EvaluationContext) -> ResolutionDetails[Any]:
        return await self._resolve_variant(
            flag_key,
            default_value,
            context,
            lambda d: json.loads(d.get("variantAttachment") or "null"),
        )

    def status_snapshot(self) -> Dict[str, Any]:
        snapshot = super().status_snapshot()
        snapshot["endpoint"] = self.endpoint
        snapshot["namespace"] = self.namespace
        return snapshot


__all__ = ["RemoteProvider", "flatten_context"]
