"""Chat orchestration: personas, turn protocol, stream parsing, sessions."""

from .orchestrator import ChatOrchestrator, TurnEvent
from .personas import Persona, SourceRequestPolicy
from .session import ConversationBusyError, ConversationState, SessionRegistry

__all__ = [
    "ChatOrchestrator",
    "ConversationBusyError",
    "ConversationState",
    "Persona",
    "SessionRegistry",
    "SourceRequestPolicy",
    "TurnEvent",
]
