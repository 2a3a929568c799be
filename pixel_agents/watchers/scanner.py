"""Periodic discovery of new session files on one node."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from pixel_agents import config
from pixel_agents.observability import record_discovery, record_scan_failure
from pixel_agents.sessions import SessionFile
from pixel_agents.watchers.filesystem import Filesystem

logger = logging.getLogger("pixel_agents.scanner")

# Returns False to defer the file; it is offered again on the next scan.
DiscoveredCallback = Callable[[SessionFile, bool], Awaitable[bool]]
KnownCallback = Callable[[str], bool]


class SessionScanner:
    """Surfaces every new session file of one node exactly once.

    The first scan only surfaces files written within the activity window;
    older ones are remembered so they never surface later. Every path that
    was surfaced or marked known is remembered for the scanner's lifetime.
    """

    def __init__(
        self,
        filesystem: Filesystem,
        on_discovered: DiscoveredCallback,
        *,
        is_known: Optional[KnownCallback] = None,
        activity_window_minutes: int = config.ACTIVITY_WINDOW_MINUTES,
    ):
        self.filesystem = filesystem
        self.node = filesystem.node
        self._on_discovered = on_discovered
        self._is_known = is_known
        self.activity_window_minutes = activity_window_minutes
        self._known: set[str] = set()
        self.initial_scan_done = False

    def mark_known(self, path: str) -> None:
        self._known.add(path)

    def is_known(self, path: str) -> bool:
        return path in self._known

    async def scan(self) -> list[SessionFile]:
        """Run one scan cycle and return the files that were surfaced."""
        initial = not self.initial_scan_done
        entries = await self.filesystem.list_sessions()
        if entries is None:
            # Unreachable host: retry the first scan until it succeeds.
            record_scan_failure(self.node.name, "list")
            logger.debug(f"Scan of {self.node.name} returned nothing this cycle")
            return []
        self.initial_scan_done = True

        cutoff = time.time() - self.activity_window_minutes * 60
        surfaced: list[SessionFile] = []
        for entry in sorted(entries, key=lambda item: item.path):
            if entry.path in self._known:
                continue
            if self._is_known is not None and self._is_known(entry.path):
                self._known.add(entry.path)
                continue
            if initial and entry.mtime is not None and entry.mtime < cutoff:
                self._known.add(entry.path)
                continue

            session_file = SessionFile.from_path(self.node, entry.path)
            try:
                accepted = await self._on_discovered(session_file, initial)
            except Exception as e:
                logger.exception(f"Failed to handle discovered session {entry.path}: {e}")
                self._known.add(entry.path)
                continue
            if not accepted:
                continue
            self._known.add(entry.path)
            record_discovery(self.node.name)
            surfaced.append(session_file)

        if initial:
            logger.info(
                f"Initial scan of {self.node.name}: {len(surfaced)} active session(s), "
                f"{len(self._known) - len(surfaced)} ignored"
            )
        return surfaced
