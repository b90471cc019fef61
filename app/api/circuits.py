"""
Circuit breaker administration.

Isolating a breaker is the operator's way to switch off a protected path;
only reset (or delete) brings it back.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.deps import get_breaker_registry
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.errors import capture_message

router = APIRouter()


class BreakerInfoResponse(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    failure_count: int
    success_count: int
    threshold: int
    cooldown_ms: int
    last_failure_time: str | None = None
    last_success_time: str | None = None


def _info_or_404(registry: CircuitBreakerRegistry, name: str) -> BreakerInfoResponse:
    info = registry.get_breaker_info(name)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Circuit breaker '{name}' not found")
    return BreakerInfoResponse(**info.to_dict())


@router.get("", response_model=List[BreakerInfoResponse])
def list_breakers(registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    return [BreakerInfoResponse(**info.to_dict()) for info in registry.get_all_breakers_info()]


@router.get("/{name}", response_model=BreakerInfoResponse)
def get_breaker(name: str, registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    return _info_or_404(registry, name)


@router.post("/{name}/isolate", response_model=BreakerInfoResponse)
def isolate_breaker(name: str, registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    if not registry.isolate(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Circuit breaker '{name}' not found")
    capture_message("Circuit breaker isolated", level="warning", context={"breaker": name})
    return _info_or_404(registry, name)


@router.post("/{name}/reset", response_model=BreakerInfoResponse)
def reset_breaker(name: str, registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    if not registry.reset(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Circuit breaker '{name}' not found")
    return _info_or_404(registry, name)


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_breaker(name: str, registry: CircuitBreakerRegistry = Depends(get_breaker_registry)):
    if not registry.remove_breaker(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Circuit breaker '{name}' not found")
