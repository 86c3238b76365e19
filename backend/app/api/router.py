from fastapi import APIRouter

from app.api.routes import calls, health, patients, vapi_webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(vapi_webhooks.router, prefix="/webhooks/vapi", tags=["vapi"])
api_router.include_router(calls.router, prefix="/calls", tags=["calls"])
api_router.include_router(patients.router, prefix="/patients", tags=["patients"])
