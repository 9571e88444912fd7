from fastapi import APIRouter
from app.modules.consent.router import router as consent_router
from app.modules.notifications.router import router as notifications_router

api_router = APIRouter()
api_router.include_router(consent_router, tags=["consent"])
api_router.include_router(notifications_router, tags=["notifications"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
