from fastapi import Request

from app.services.finalization import CallFinalizer
from app.services.live_calls import LiveCallRegistry


def get_live_call_registry(request: Request) -> LiveCallRegistry:
    return request.app.state.live_calls


def get_call_finalizer(request: Request) -> CallFinalizer:
    return request.app.state.call_finalizer
