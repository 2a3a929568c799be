"""Remote command execution over ``ssh``.

Two shapes are needed: short listing commands whose stdout we wait for, and
long-lived streaming commands (``tail -f``) whose stdout is consumed as it
arrives. Both run non-interactively so an unreachable host or a missing key
fails fast instead of prompting.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Optional

from pixel_agents import config
from pixel_agents.models import ClusterNode

logger = logging.getLogger("pixel_agents.remote")


class RemoteShell:
    def __init__(
        self,
        *,
        ssh_binary: str = config.SSH_BINARY,
        connect_timeout: int = config.SSH_CONNECT_TIMEOUT_SECONDS,
        command_timeout: float = config.SSH_COMMAND_TIMEOUT_SECONDS,
        stream_connect_timeout: int = config.SSH_STREAM_CONNECT_TIMEOUT_SECONDS,
        server_alive_interval: int = config.SSH_SERVER_ALIVE_INTERVAL_SECONDS,
    ):
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.stream_connect_timeout = stream_connect_timeout
        self.server_alive_interval = server_alive_interval

    def build_args(self, node: ClusterNode, command: str, *, streaming: bool = False) -> list[str]:
        connect_timeout = self.stream_connect_timeout if streaming else self.connect_timeout
        args = [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
        ]
        if streaming:
            args += ["-o", f"ServerAliveInterval={self.server_alive_interval}"]
        args += [node.address, command]
        return args

    async def run(self, node: ClusterNode, command: str) -> Optional[str]:
        """Run ``command`` on ``node`` and return stdout.

        Returns ``None`` when the host is unreachable, the command fails, or
        the overall timeout expires; callers treat that as "nothing this cycle".
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(node, command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning(f"Cannot start {self.ssh_binary} for {node.name}: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Remote command timed out on {node.name} after {self.command_timeout}s")
            _kill(proc)
            await proc.wait()
            return None
        except asyncio.CancelledError:
            _kill(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.debug(f"Remote command on {node.name} exited {proc.returncode}: {detail}")
            return None
        return stdout.decode("utf-8", errors="replace")

    async def open_stream(self, node: ClusterNode, command: str) -> asyncio.subprocess.Process:
        """Start a streaming command; the caller owns the returned process."""
        return await asyncio.create_subprocess_exec(
            *self.build_args(node, command, streaming=True),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def quote_remote_path(path: str) -> str:
    """Shell-quote ``path`` for the remote side, keeping a leading ``~/`` live."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)
