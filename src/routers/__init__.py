"""
Routers Package

Contains FastAPI router modules for:
- Voice relay WebSocket endpoint
- Server info and health
"""

from routers.chat_router import chat_router as chat_router
from routers.status_router import status_router as status_router

__all__ = ["chat_router", "status_router"]
