from .chat_session import ChatSession
from .rolling_context import InteractionRecord, RollingContext
from .session_router import SessionRouter, get_session_router
from .turn_assembler import TurnAssembler, TurnState

__all__ = [
    "ChatSession",
    "InteractionRecord",
    "RollingContext",
    "SessionRouter",
    "TurnAssembler",
    "TurnState",
    "get_session_router",
]
