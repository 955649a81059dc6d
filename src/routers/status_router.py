from fastapi import APIRouter, Depends, Request

from chat import SessionRouter, get_session_router
from core.settings import Settings, get_settings
from upstream import get_upstream_settings

status_router = APIRouter(tags=["status"])


def websocket_url(settings: Settings) -> str:
    scheme = "wss" if settings.use_ssl else "ws"
    return f"{scheme}://{settings.server_host}:{settings.server_port}/"


@status_router.get("/inf")
async def server_info(request: Request, settings: Settings = Depends(get_settings)):
    """Server name, version and, in debug mode, where to connect."""
    info = {"name": request.app.title, "version": request.app.version, "status": "running"}
    if settings.debug:
        info["websocket"] = websocket_url(settings)
        info["model"] = get_upstream_settings().gemini_model
    return info


@status_router.get("/health")
async def health_check(session_router: SessionRouter = Depends(get_session_router)):
    return {"status": "healthy", "sessions": session_router.session_count}
