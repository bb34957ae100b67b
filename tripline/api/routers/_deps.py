"""
Shared dependencies and response helpers for the trip routers.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from pydantic import BaseModel

from tripline.api.trips.engine import TripMutationEngine


class Envelope(BaseModel):
    success: bool
    data: Any
    requestId: str


def request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def ok(request: Request, data: Any) -> Envelope:
    return Envelope(success=True, data=data, requestId=request_id(request))


def get_trip_engine(request: Request) -> TripMutationEngine:
    """FastAPI dependency -- the engine built during lifespan."""
    return request.app.state.trip_engine
