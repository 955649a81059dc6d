"""
Client Package

Reference client-side logic for the relay:
- VoiceActivityDetector: energy-gate utterance detection
- ClientConversationController: listen / process / play turn cycle
"""

from .conversation_controller import ClientConversationController, UIState
from .voice_activity import VoiceActivityDetector

__all__ = ["ClientConversationController", "UIState", "VoiceActivityDetector"]
