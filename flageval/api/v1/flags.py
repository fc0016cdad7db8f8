"""Diagnostics endpoints: health, metrics, breakers, cache, ad-hoc evaluation and alerts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from flageval.api.dependencies import get_flag_service
from flageval.core.feature_flags.service import FeatureFlagsService

router = APIRouter()


class CacheStatusResponse(BaseModel):
    healthy: bool
    size: int
    max_size: int
    hit_rate: float
    hits: int
    misses: int
    evictions: int
    issues: List[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    initialized: bool
    environment: str
    default_provider: str
    providers: Dict[str, Dict[str, Any]]
    cache: CacheStatusResponse
    circuit_breakers: Dict[str, Dict[str, Any]]
    active_alerts: int
    timestamp: str


class CircuitBreakerStateResponse(BaseModel):
    state: str
    is_open: bool
    failures: int
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None


class ResetResponse(BaseModel):
    name: str
    reset: bool


class CacheRefreshResponse(BaseModel):
    status: str
    cleared: int


class EvaluateRequest(BaseModel):
    flags: Union[Dict[str, Any], List[str]]
    context: Dict[str, Any] = Field(default_factory=dict)
    parallel: bool = False


class EvaluationResultResponse(BaseModel):
    flag_key: str
    value: Any = None
    variant: Optional[str] = None
    reason: str
    source: str
    provider_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    evaluation_time: str


class EvaluateResponse(BaseModel):
    results: Dict[str, EvaluationResultResponse]


class AlertResponse(BaseModel):
    id: str
    type: str
    severity: str
    message: str
    threshold: float
    current_value: float
    flag_key: Optional[str] = None
    timestamp: float
    resolved: bool


@router.get("/health", response_model=HealthResponse)
async def flags_health(service: FeatureFlagsService = Depends(get_flag_service)):
    healthy = await service.is_healthy()
    info = service.get_service_info()
    cache_health = service.cache.get_health()
    stats = cache_health.stats

    if not service.initialized:
        status = "unavailable"
    elif not healthy or not cache_health.healthy:
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        initialized=service.initialized,
        environment=info["environment"],
        default_provider=info["default_provider"],
        providers=info["providers"],
        cache=CacheStatusResponse(
            healthy=cache_health.healthy,
            size=stats.size,
            max_size=stats.max_size,
            hit_rate=stats.hit_rate,
            hits=stats.hits,
            misses=stats.misses,
            evictions=stats.evictions,
            issues=list(cache_health.issues),
        ),
        circuit_breakers=info["circuit_breakers"],
        active_alerts=len(service.metrics.get_active_alerts()),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/metrics")
async def flags_metrics(
    format: str = Query(default="json", pattern="^(json|prometheus)$"),
    service: FeatureFlagsService = Depends(get_flag_service),
):
    if format == "prometheus":
        return Response(service.metrics.export_metrics("prometheus"), media_type=CONTENT_TYPE_LATEST)
    provider_health = {name: p.status.value == "healthy" for name, p in service.providers.items()}
    return Response(
        service.metrics.export_metrics("json", provider_health=provider_health),
        media_type="application/json",
    )


@router.get("/circuit-breakers", response_model=Dict[str, CircuitBreakerStateResponse])
async def circuit_breakers(service: FeatureFlagsService = Depends(get_flag_service)):
    return {
        name: CircuitBreakerStateResponse(
            state=state.state.value,
            is_open=state.is_open,
            failures=state.failures,
            last_failure_time=state.last_failure_time,
            next_attempt_time=state.next_attempt_time,
        )
        for name, state in service.error_handler.get_circuit_breaker_states().items()
    }


@router.post("/circuit-breakers/{name}/reset", response_model=ResetResponse)
async def reset_circuit_breaker(name: str, service: FeatureFlagsService = Depends(get_flag_service)):
    if not service.error_handler.reset_circuit_breaker(name):
        raise HTTPException(status_code=404, detail=f"Circuit breaker '{name}' not found")
    return ResetResponse(name=name, reset=True)


@router.post("/cache/refresh", response_model=CacheRefreshResponse)
async def refresh_cache(service: FeatureFlagsService = Depends(get_flag_service)):
    cleared = service.cache.get_stats().size
    await service.refresh_cache()
    return CacheRefreshResponse(status="ok", cleared=cleared)


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate(payload: EvaluateRequest, service: FeatureFlagsService = Depends(get_flag_service)):
    results = await service.evaluate_flags(payload.flags, payload.context or None, parallel=payload.parallel)
    return EvaluateResponse(
        results={
            key: EvaluationResultResponse(
                flag_key=result.flag_key,
                value=result.value,
                variant=result.variant,
                reason=result.reason.value,
                source=result.source.value,
                provider_name=result.provider_name,
                metadata=dict(result.metadata),
                evaluation_time=result.evaluation_time.isoformat(),
            )
            for key, result in results.items()
        }
    )


@router.get("/alerts", response_model=List[AlertResponse])
async def list_alerts(service: FeatureFlagsService = Depends(get_flag_service)):
    return [AlertResponse(**alert.to_dict()) for alert in service.metrics.get_active_alerts()]


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(alert_id: str, service: FeatureFlagsService = Depends(get_flag_service)):
    alerts = {alert.id: alert for alert in service.metrics.get_active_alerts()}
    if alert_id not in alerts or not service.metrics.resolve_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert '{alert_id}' not found")
    return AlertResponse(**alerts[alert_id].to_dict())
