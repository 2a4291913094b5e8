from .sessions_router import router as sessions_router
from .admin_router import router as admin_router

__all__ = [
    "sessions_router",
    "admin_router",
]
