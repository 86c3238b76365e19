from fastapi import APIRouter, Depends

from app.api.deps import get_live_call_registry
from app.services.live_calls import LiveCallRegistry

router = APIRouter()


@router.get("/health")
def health(registry: LiveCallRegistry = Depends(get_live_call_registry)) -> dict:
    return {
        "status": "ok",
        "live_calls": len(registry.get_live()),
        "viewers": registry.broadcaster.subscriber_count,
    }
