"""Per-node filesystem capability.

Scanner, ownership ledger and supervisor only ever talk to a node through
this small surface, so none of them branch on whether the node is local.
"""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import NamedTuple, Optional

from pixel_agents import config
from pixel_agents.models import ClusterNode
from pixel_agents.sessions import TailCursor
from pixel_agents.watchers.remote import RemoteShell, quote_remote_path
from pixel_agents.watchers.tailer import (
    ClosedCallback,
    FileTailer,
    LinesCallback,
    LocalFileTailer,
    RemoteFileTailer,
)

logger = logging.getLogger("pixel_agents.filesystem")


class SessionEntry(NamedTuple):
    path: str
    mtime: Optional[float] = None


class Filesystem:
    """Operations the engine needs from one node."""

    node: ClusterNode
    root: str

    async def list_sessions(self) -> Optional[list[SessionEntry]]:
        """Session files under the projects root, or ``None`` if listing failed.

        Entries carry the mtime when the listing can provide it cheaply; a
        listing that is already age-bounded on the node leaves it ``None``.
        """
        raise NotImplementedError

    async def list_project_files(self, project_dir: str) -> list[str]:
        """Session files in one project directory, newest first."""
        raise NotImplementedError

    async def stat_mtime(self, path: str) -> Optional[float]:
        raise NotImplementedError

    def project_dir_for(self, project_key: str) -> str:
        raise NotImplementedError

    def open_tailer(
        self,
        path: str,
        cursor: TailCursor,
        on_lines: LinesCallback,
        on_closed: ClosedCallback,
        *,
        from_end: bool = False,
    ) -> FileTailer:
        raise NotImplementedError


class LocalFilesystem(Filesystem):
    def __init__(
        self,
        node: ClusterNode,
        root: Path = config.CLAUDE_PROJECTS_DIR,
        *,
        poll_interval: float = config.TAIL_POLL_INTERVAL_SECONDS,
        watch: bool = config.TAIL_WATCH_ENABLED,
    ):
        self.node = node
        self.root = str(root)
        self.poll_interval = poll_interval
        self.watch = watch

    async def list_sessions(self) -> Optional[list[SessionEntry]]:
        found: list[SessionEntry] = []
        try:
            project_dirs = [entry for entry in os.scandir(self.root) if entry.is_dir()]
        except OSError as e:
            logger.debug(f"Cannot list {self.root}: {e}")
            return found

        for project_dir in project_dirs:
            for path, mtime in _session_entries(project_dir.path):
                found.append(SessionEntry(path, mtime))
        return found

    async def list_project_files(self, project_dir: str) -> list[str]:
        entries = _session_entries(project_dir)
        entries.sort(key=lambda item: item[1], reverse=True)
        return [path for path, _mtime in entries]

    async def stat_mtime(self, path: str) -> Optional[float]:
        try:
            return os.stat(path).st_mtime
        except OSError:
            return None

    def project_dir_for(self, project_key: str) -> str:
        return os.path.join(self.root, project_key)

    def open_tailer(
        self,
        path: str,
        cursor: TailCursor,
        on_lines: LinesCallback,
        on_closed: ClosedCallback,
        *,
        from_end: bool = False,
    ) -> FileTailer:
        if from_end:
            try:
                cursor.byte_offset = os.stat(path).st_size
            except OSError as e:
                logger.debug(f"Stat failed for {path}, tailing from start: {e}")
        return LocalFileTailer(
            self.node,
            path,
            cursor,
            on_lines,
            poll_interval=self.poll_interval,
            watch=self.watch,
        )


def _session_entries(directory: str) -> list[tuple[str, float]]:
    entries: list[tuple[str, float]] = []
    try:
        with os.scandir(directory) as it:
            for entry in it:
                if not entry.name.endswith(config.SESSION_SUFFIX):
                    continue
                try:
                    if not entry.is_file():
                        continue
                    entries.append((entry.path, entry.stat().st_mtime))
                except OSError:
                    continue
    except OSError as e:
        logger.debug(f"Cannot list {directory}: {e}")
    return entries


class RemoteFilesystem(Filesystem):
    """A node reached over ``ssh``; each operation is one remote command."""

    def __init__(
        self,
        node: ClusterNode,
        shell: RemoteShell,
        root: str = config.REMOTE_PROJECTS_DIR,
        *,
        listing_window_minutes: int = config.ACTIVITY_WINDOW_MINUTES,
        tail_lines: int = config.REMOTE_TAIL_LINES,
    ):
        self.node = node
        self.shell = shell
        self.root = root.rstrip("/") or "/"
        self.listing_window_minutes = listing_window_minutes
        self.tail_lines = tail_lines

    async def list_sessions(self) -> Optional[list[SessionEntry]]:
        # Always bounded by age: a new session is a recently written one.
        command = (
            f"find {quote_remote_path(self.root)} -mindepth 2 -maxdepth 2 "
            f"-name '*{config.SESSION_SUFFIX}' -mmin -{max(1, int(self.listing_window_minutes))} 2>/dev/null"
        )
        output = await self.shell.run(self.node, command)
        if output is None:
            return None
        return [SessionEntry(line.strip()) for line in output.splitlines() if line.strip()]

    async def list_project_files(self, project_dir: str) -> list[str]:
        # pwd first so returned paths are absolute even for a "~/..." directory.
        command = f"cd {quote_remote_path(project_dir)} 2>/dev/null && pwd && ls -1t"
        output = await self.shell.run(self.node, command)
        if not output:
            return []
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            return []
        base = lines[0].rstrip("/")
        return [f"{base}/{name}" for name in lines[1:] if name.endswith(config.SESSION_SUFFIX)]

    async def stat_mtime(self, path: str) -> Optional[float]:
        quoted = quote_remote_path(path)
        output = await self.shell.run(self.node, f"stat -c %Y {quoted} 2>/dev/null || stat -f %m {quoted}")
        if not output:
            return None
        try:
            return float(output.strip().splitlines()[0])
        except (ValueError, IndexError):
            return None

    def project_dir_for(self, project_key: str) -> str:
        return f"{self.root}/{project_key}"

    def open_tailer(
        self,
        path: str,
        cursor: TailCursor,
        on_lines: LinesCallback,
        on_closed: ClosedCallback,
        *,
        from_end: bool = False,
    ) -> FileTailer:
        return RemoteFileTailer(
            self.node,
            path,
            cursor,
            on_lines,
            on_closed,
            shell=self.shell,
            tail_lines=self.tail_lines,
            from_start=not from_end,
        )


def build_filesystem(node: ClusterNode, shell: RemoteShell) -> Filesystem:
    if node.isLocal:
        return LocalFilesystem(node)
    return RemoteFilesystem(node, shell)
