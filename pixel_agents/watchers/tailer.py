"""Transcript tailers.

A tailer owns the delivery of newly appended bytes of one session file. The
local variant combines a `watchfiles` watch (fast, may miss events) with a
fixed-interval poll (slow, always correct); both call the same idempotent
``read_new``. The remote variant follows the file through ``ssh ... tail -f``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable, Optional

from watchfiles import awatch

from pixel_agents import config
from pixel_agents.models import ClusterNode
from pixel_agents.observability import record_tail_bytes
from pixel_agents.sessions import TailCursor
from pixel_agents.watchers.remote import RemoteShell, quote_remote_path

logger = logging.getLogger("pixel_agents.tailer")

LinesCallback = Callable[[list[str]], None]
ClosedCallback = Callable[[], None]

_STREAM_CHUNK_SIZE = 64 * 1024


def split_lines(cursor: TailCursor, data: bytes) -> list[str]:
    """Join ``data`` with the stored remainder and return complete lines.

    The trailing fragment (possibly empty) is kept on the cursor as bytes so a
    multi-byte character split across reads is decoded only once whole.
    """
    parts = (cursor.line_remainder + data).split(b"\n")
    cursor.line_remainder = parts.pop()
    lines: list[str] = []
    for raw in parts:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        if line.strip():
            lines.append(line)
    return lines


class FileTailer:
    """Common bookkeeping for both tailer variants."""

    def __init__(self, node: ClusterNode, path: str, cursor: TailCursor, on_lines: LinesCallback):
        self.node = node
        self.path = path
        self.cursor = cursor
        self._on_lines = on_lines
        self._stopped = False
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Stop delivery synchronously; no callback fires after this returns."""
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    def _deliver(self, data: bytes) -> None:
        self.cursor.last_activity_at = time.time()
        record_tail_bytes(self.node.name, len(data))
        lines = split_lines(self.cursor, data)
        if lines and not self._stopped:
            self._on_lines(lines)


class LocalFileTailer(FileTailer):
    def __init__(
        self,
        node: ClusterNode,
        path: str,
        cursor: TailCursor,
        on_lines: LinesCallback,
        *,
        poll_interval: float = config.TAIL_POLL_INTERVAL_SECONDS,
        watch: bool = config.TAIL_WATCH_ENABLED,
    ):
        super().__init__(node, path, cursor, on_lines)
        self.poll_interval = poll_interval
        self.watch = watch
        self._stop_event = asyncio.Event()
        self._truncation_logged = False

    def start(self) -> None:
        if self._tasks:
            logger.warning(f"Tailer for {self.path} already running")
            return
        self.read_new()
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        if self.watch:
            self._tasks.append(asyncio.create_task(self._watch_loop()))

    def stop(self) -> None:
        self._stop_event.set()
        super().stop()

    def read_new(self) -> int:
        """Read whatever was appended since the last read.

        Safe to call redundantly: with no growth since the previous read it
        does nothing. Returns the number of bytes consumed.
        """
        if self._stopped:
            return 0
        try:
            size = os.stat(self.path).st_size
        except OSError as e:
            logger.debug(f"Stat failed for {self.path}: {e}")
            return 0

        offset = self.cursor.byte_offset
        if size <= offset:
            if size < offset and not self._truncation_logged:
                logger.warning(f"{self.path} shrank below read offset ({size} < {offset}); waiting for growth")
                self._truncation_logged = True
            return 0

        try:
            with open(self.path, "rb") as handle:
                handle.seek(offset)
                data = handle.read(size - offset)
        except OSError as e:
            logger.warning(f"Read failed for {self.path}: {e}")
            return 0

        if not data:
            return 0
        self.cursor.byte_offset = offset + len(data)
        self._deliver(data)
        return len(data)

    async def _poll_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.poll_interval)
            try:
                self.read_new()
            except Exception as e:
                logger.error(f"Error handling new lines from {self.path}: {e}")

    async def _watch_loop(self) -> None:
        try:
            async for _changes in awatch(self.path, stop_event=self._stop_event):
                if self._stopped:
                    break
                try:
                    self.read_new()
                except Exception as e:
                    logger.error(f"Error handling new lines from {self.path}: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Polling keeps the file covered.
            logger.warning(f"Watch unavailable for {self.path}, relying on polling: {e}")


class RemoteFileTailer(FileTailer):
    def __init__(
        self,
        node: ClusterNode,
        path: str,
        cursor: TailCursor,
        on_lines: LinesCallback,
        on_closed: ClosedCallback,
        *,
        shell: RemoteShell,
        tail_lines: int = config.REMOTE_TAIL_LINES,
        from_start: bool = False,
    ):
        super().__init__(node, path, cursor, on_lines)
        self._on_closed = on_closed
        self.shell = shell
        self.tail_lines = tail_lines
        self.from_start = from_start
        self._proc: Optional[asyncio.subprocess.Process] = None

    @property
    def command(self) -> str:
        # Whole file for claimed files, a short backlog for files found already running.
        start = "-c +1" if self.from_start else f"-n {max(0, int(self.tail_lines))}"
        return f"tail -f {start} {quote_remote_path(self.path)} 2>/dev/null"

    def start(self) -> None:
        if self._tasks:
            logger.warning(f"Remote tailer for {self.node.name}:{self.path} already running")
            return
        self._tasks.append(asyncio.create_task(self._stream()))

    def stop(self) -> None:
        super().stop()
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
        self._proc = None

    async def _stream(self) -> None:
        code: Optional[int] = None
        try:
            proc = await self.shell.open_stream(self.node, self.command)
            if self._stopped:
                proc.terminate()
                return
            self._proc = proc
            self._tasks.append(asyncio.create_task(self._drain_stderr(proc)))
            assert proc.stdout is not None
            while True:
                chunk = await proc.stdout.read(_STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                self.cursor.byte_offset += len(chunk)
                self._deliver(chunk)
            code = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Remote tail failed for {self.node.name}:{self.path}: {e}")
        finally:
            if not self._stopped:
                self._stopped = True
                logger.info(f"SSH tail closed: {self.node.name}:{self.path} (code {code})")
                self._on_closed()

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                return
            message = raw.decode("utf-8", errors="replace").strip()
            if message and "Warning:" not in message:
                logger.warning(f"SSH {self.node.name}: {message}")
