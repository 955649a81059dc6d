"""
Relay error taxonomy.

Raised where a failure is detected and converted into client control
messages at the session boundary (see chat/chat_session.py).
"""


class RelayError(Exception):
    """Base class for every error the relay raises on purpose."""


class TranscodeError(RelayError):
    """Compressed input was empty/malformed or the external transcoder failed."""


class NotReady(RelayError):
    """The session cannot accept this request yet; the client should retry."""


class UpstreamNotReady(NotReady):
    """A send was attempted before the upstream handshake was acknowledged."""


class TurnInProgress(NotReady):
    """A capture arrived while the previous turn was still in flight."""


class UpstreamTransportError(RelayError):
    """The upstream connection dropped or could not be established."""

    def __init__(self, message: str, close_code: int | None = None):
        super().__init__(message)
        self.close_code = close_code


class ResponseTimeout(RelayError):
    """No upstream audio arrived before the response deadline."""


class MalformedUpstreamEvent(RelayError):
    """An upstream message body could not be parsed."""
