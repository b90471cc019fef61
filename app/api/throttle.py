"""
Throttle counter inspection and reset (support/ops use).
"""

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from app.api.deps import get_throttle_guard
from app.core.rate_limit import MultiDimensionGuard, ThrottleDimension, build_key

router = APIRouter()


class ThrottleStatusResponse(BaseModel):
    key: str
    blocked: bool
    current: int
    limit: int
    remaining_seconds: int


@router.get("/{dimension}/{identifier}", response_model=ThrottleStatusResponse)
async def get_throttle_status(
    dimension: ThrottleDimension,
    identifier: str,
    guard: MultiDimensionGuard = Depends(get_throttle_guard),
):
    """Current counter for one dimension, against the default policy."""
    result = await guard.get_dimension_status(dimension, identifier)
    return ThrottleStatusResponse(key=build_key(dimension, identifier), **result.to_dict())


@router.delete("/{dimension}/{identifier}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_throttle(
    dimension: ThrottleDimension,
    identifier: str,
    guard: MultiDimensionGuard = Depends(get_throttle_guard),
):
    await guard.reset_dimension(dimension, identifier)
