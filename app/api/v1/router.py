from fastapi import APIRouter

from app.api.v1.endpoints.health import router as health_router
from app.api.v1.endpoints.outbox import router as outbox_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(outbox_router, tags=["outbox"])
