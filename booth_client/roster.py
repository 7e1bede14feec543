# =============================================================================
# Booth Client -- Roster Reconciler
# =============================================================================
#
# One merge rule for both transports: a snapshot is applied only if its
# version is strictly greater than the current one.  That makes the socket
# push (roster.updated) and the HTTP poll safely interchangeable, whatever
# order their results arrive in.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable

from ._logging import logger
from .constants import POLL_INTERVAL
from .types import RosterMember, SessionRoster

if TYPE_CHECKING:
    from .collaborators import SnapshotStore
    from .polling import SessionMetaFetcher

RosterListener = Callable[[SessionRoster], Any]


class RosterReconciler:
    """Version-ordered roster state with an optional polling fallback.

    Args:
        fetcher: Pull source for snapshots. Without one, polling is a no-op.
        snapshot_store: Optional store holding an optimistic snapshot.
        poll_interval: Seconds between polls while polling is active.
        on_change: Called with the new roster after every applied update.
        should_poll: Checked before every fetch. When it returns False the
            poll loop stops itself and immediate polls are skipped.
    """

    def __init__(
        self,
        *,
        fetcher: SessionMetaFetcher | None = None,
        snapshot_store: SnapshotStore | None = None,
        poll_interval: float = POLL_INTERVAL,
        on_change: RosterListener | None = None,
        should_poll: Callable[[], bool] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._store = snapshot_store
        self._poll_interval = poll_interval
        self._on_change = on_change
        self._should_poll = should_poll

        self._roster = SessionRoster()
        self._optimistic: SessionRoster | None = None
        self._store_cleared = False
        self._session_id: str | None = None

        self._poll_task: asyncio.Task[None] | None = None
        self._immediate_polls: set[asyncio.Task[Any]] = set()
        self._polls_applied = 0
        self._stale_dropped = 0
        self._poll_failures = 0

    # -- State ----------------------------------------------------------------

    @property
    def roster(self) -> SessionRoster:
        """What to render: the optimistic snapshot until real data arrives."""
        if self._optimistic is not None:
            return self._optimistic
        return self._roster

    @property
    def members(self) -> list[RosterMember]:
        return list(self.roster.members)

    @property
    def version(self) -> int:
        """Version of the displayed roster.

        While an optimistic snapshot is shown this is the snapshot's
        version, so it can drop when the first authoritative update
        replaces it. Use :attr:`authoritative_version` for ordering.
        """
        return self.roster.version

    @property
    def authoritative_version(self) -> int:
        """Highest applied server version. Never decreases."""
        return self._roster.version

    @property
    def is_optimistic(self) -> bool:
        return self._optimistic is not None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def track_session(self, session_id: str | None) -> None:
        if session_id and session_id != self._session_id:
            logger.debug("Tracking session %s for polling", session_id)
        self._session_id = session_id or None

    def load_optimistic(self) -> bool:
        """Seed the displayed roster from the snapshot store, once.

        The optimistic snapshot does not raise the merge baseline, so the
        first authoritative update always replaces it.
        """
        if self._store is None:
            return False
        try:
            raw = self._store.load()
        except Exception as exc:
            logger.warning("Failed to load optimistic roster state: %s", exc)
            return False
        if not raw:
            return False

        try:
            snapshot = SessionRoster.from_wire(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed optimistic roster state: %s", exc)
            return False

        self._optimistic = snapshot
        if raw.get("sessionId"):
            self.track_session(raw["sessionId"])
        logger.info(
            "Applied optimistic roster state: %d members, version %d",
            len(snapshot.members),
            snapshot.version,
        )
        return True

    def apply(self, snapshot: SessionRoster, *, source: str = "push") -> bool:
        """Merge *snapshot* if it is newer. Returns True when applied."""
        current = self._roster.version
        if snapshot.version <= current:
            self._stale_dropped += 1
            logger.debug(
                "Ignoring stale roster from %s: received v%d, current v%d",
                source,
                snapshot.version,
                current,
            )
            return False

        self._roster = snapshot
        self._optimistic = None
        if source == "poll":
            self._polls_applied += 1
        elif not self._store_cleared and self._store is not None:
            self._store_cleared = True
            try:
                self._store.clear()
                logger.debug("Cleared optimistic roster state after push update")
            except Exception as exc:
                logger.warning("Failed to clear optimistic roster state: %s", exc)

        logger.info(
            "Applied roster update from %s: version %d, %d members",
            source,
            snapshot.version,
            len(snapshot.members),
        )
        if self._on_change is not None:
            try:
                self._on_change(snapshot)
            except Exception as exc:
                logger.error("Roster listener error: %s", exc)
        return True

    # -- Polling --------------------------------------------------------------

    @property
    def polling(self) -> bool:
        return self._poll_task is not None

    def set_polling(self, active: bool) -> None:
        """Start or stop the poll loop. Idempotent in both directions."""
        if active and self._poll_task is None:
            if self._fetcher is None:
                return
            logger.info("Starting fallback polling every %.0fs", self._poll_interval)
            self._poll_task = asyncio.create_task(self._poll_loop())
        elif not active and self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
            logger.info("Stopped fallback polling")

    def poll_now(self) -> None:
        """Poll immediately, independent of the interval."""
        task = asyncio.create_task(self._poll_guarded())
        self._immediate_polls.add(task)
        task.add_done_callback(self._immediate_polls.discard)

    async def poll_once(self) -> bool:
        """Fetch one snapshot and merge it. Returns True when applied."""
        if self._fetcher is None or not self._session_id:
            return False
        snapshot = await self._fetcher.fetch(self._session_id)
        if snapshot is None:
            return False
        return self.apply(snapshot, source="poll")

    def stop(self) -> None:
        """Cancel the poll loop and any in-flight immediate polls."""
        self.set_polling(False)
        for task in self._immediate_polls:
            task.cancel()
        self._immediate_polls.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "authoritative_version": self._roster.version,
            "members": len(self.roster.members),
            "optimistic": self.is_optimistic,
            "session_id": self._session_id,
            "polling": self.polling,
            "polls_applied": self._polls_applied,
            "stale_dropped": self._stale_dropped,
            "poll_failures": self._poll_failures,
        }

    def _may_poll(self) -> bool:
        return self._should_poll is None or self._should_poll()

    async def _poll_guarded(self) -> bool:
        if not self._may_poll():
            logger.debug("Skipping poll, polling conditions do not hold")
            return False
        try:
            return await self.poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._poll_failures += 1
            logger.warning("Session meta polling failed: %s", exc)
            return False

    async def _poll_loop(self) -> None:
        while True:
            if not self._may_poll():
                self._poll_task = None
                logger.info("Polling conditions no longer hold, stopped fallback polling")
                return
            try:
                await self._poll_guarded()
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                return
