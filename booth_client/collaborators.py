# =============================================================================
# Booth Client -- Collaborator Interfaces
# =============================================================================
#
# Everything the session client needs from its host: identity, an optional
# snapshot cache, a way to tell the user about failures, and page visibility.
# Each interface ships with a small in-process default.
# =============================================================================

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from ._logging import logger
from .types import Identity

VisibilityListener = Callable[[bool], Any]


@runtime_checkable
class IdentityProvider(Protocol):
    """Cached view of the signed-in user."""

    def get_current_identity(self) -> Identity | None: ...

    def invalidate_and_refetch(self) -> Awaitable[Identity | None]: ...


@runtime_checkable
class SnapshotStore(Protocol):
    """Ephemeral store holding an optimistic roster snapshot."""

    def load(self) -> dict[str, Any] | None: ...

    def clear(self) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, kind: str, message: str) -> None: ...


@runtime_checkable
class VisibilityProvider(Protocol):
    """Whether the host page is currently shown to the user."""

    @property
    def is_visible(self) -> bool: ...

    def add_listener(self, listener: VisibilityListener) -> None: ...

    def remove_listener(self, listener: VisibilityListener) -> None: ...


# -- Defaults -----------------------------------------------------------------


class StaticIdentityProvider:
    """Identity provider backed by a fixed value or a refetch coroutine.

    Args:
        identity: The identity to report, or ``None`` if signed out.
        refetch: Optional coroutine function returning a fresh identity.
            Without it, refetching just reports the current value.
    """

    def __init__(
        self,
        identity: Identity | None = None,
        refetch: Callable[[], Awaitable[Identity | None]] | None = None,
    ) -> None:
        self._identity = identity
        self._refetch = refetch

    def get_current_identity(self) -> Identity | None:
        return self._identity

    async def invalidate_and_refetch(self) -> Identity | None:
        if self._refetch is not None:
            self._identity = None
            self._identity = await self._refetch()
        return self._identity

    def set_identity(self, identity: Identity | None) -> None:
        self._identity = identity


class InMemorySnapshotStore:
    def __init__(self, snapshot: dict[str, Any] | None = None) -> None:
        self._snapshot = snapshot

    def load(self) -> dict[str, Any] | None:
        return self._snapshot

    def clear(self) -> None:
        self._snapshot = None


class LoggingNotifier:
    """Notifier that writes user-facing messages to the package log."""

    def notify(self, kind: str, message: str) -> None:
        if kind == "error":
            logger.error("%s", message)
        elif kind == "warning":
            logger.warning("%s", message)
        else:
            logger.info("%s", message)


class ManualVisibility:
    """Visibility flag flipped by the host (e.g. a window focus hook)."""

    def __init__(self, visible: bool = True) -> None:
        self._visible = visible
        self._listeners: list[VisibilityListener] = []

    @property
    def is_visible(self) -> bool:
        return self._visible

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        for listener in list(self._listeners):
            try:
                listener(visible)
            except Exception as exc:
                logger.error("Visibility listener error: %s", exc)

    def add_listener(self, listener: VisibilityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: VisibilityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
