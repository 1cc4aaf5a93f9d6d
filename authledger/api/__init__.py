"""HTTP routers.

Mounts the auth and credits routers at the application root.
"""

from fastapi import APIRouter

from authledger.api.auth import router as auth_router
from authledger.api.credits import router as credits_router

router = APIRouter()

router.include_router(auth_router)
router.include_router(credits_router)

__all__ = ["router"]
