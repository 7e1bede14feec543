# =============================================================================
# Booth Client -- Error Types
# =============================================================================

from __future__ import annotations


class BoothError(Exception):
    """Base exception for all booth client errors."""


class TransientTransportError(BoothError):
    """Socket failed to open, closed, or errored. Retried with backoff."""


class AuthError(BoothError):
    """Authentication rejected and the silent refresh budget is spent."""


class NotReadyError(BoothError):
    """Operation needs an authenticated connection."""


class ProtocolError(BoothError):
    """Malformed inbound frame."""


class RateLimitedError(BoothError):
    """Server asked the client to stop sending for a while."""

    def __init__(self, next_allowed_at: float | None = None) -> None:
        self.next_allowed_at = next_allowed_at
        super().__init__("You are sending messages too quickly. Please wait.")


# -- Local validation ----------------------------------------------------------


class ValidationError(BoothError):
    """Outbound message rejected locally, never reaches the network."""


class EmptyMessageError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Message cannot be empty")


class MessageTooLongError(ValidationError):
    def __init__(self, length: int, limit: int) -> None:
        self.length = length
        self.limit = limit
        super().__init__(f"Message too long ({length} > {limit} characters)")


class NoChannelError(ValidationError):
    def __init__(self) -> None:
        super().__init__("No channel joined")
