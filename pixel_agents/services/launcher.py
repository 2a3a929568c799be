"""Start a new Claude Code session bound to a known session id."""
from __future__ import annotations

import asyncio
import json
import logging
import shlex
import sys
from typing import Optional

from pixel_agents import config
from pixel_agents.models import ClusterNode
from pixel_agents.watchers.remote import RemoteShell

logger = logging.getLogger("pixel_agents.launcher")


class LaunchError(RuntimeError):
    """Raised when a terminal for the new session could not be opened."""


class SessionLauncher:
    """Opens a terminal running ``claude --session-id <id>`` in ``cwd``.

    On macOS a Terminal window is opened through ``osascript``; for remote
    nodes the window runs ``ssh -t`` into the host. Elsewhere there is no
    terminal to drive, so the command is logged for the user to run.
    """

    def __init__(
        self,
        shell: RemoteShell,
        *,
        claude_binary: str = config.CLAUDE_BINARY,
        platform: Optional[str] = None,
    ):
        self.shell = shell
        self.claude_binary = claude_binary
        self.platform = platform or sys.platform

    def build_command(self, node: ClusterNode, cwd: str, session_id: str) -> str:
        inner = f"cd {shlex.quote(cwd)} && {shlex.quote(self.claude_binary)} --session-id {shlex.quote(session_id)}"
        if node.isLocal:
            return inner
        return shlex.join([self.shell.ssh_binary, "-t", node.address, inner])

    async def launch(self, node: ClusterNode, cwd: str, session_id: str) -> str:
        command = self.build_command(node, cwd, session_id)
        if self.platform != "darwin":
            logger.info(f"Run in a terminal to start the session: {command}")
            return command

        args: list[str] = []
        for line in (
            'tell application "Terminal"',
            "activate",
            f"do script {json.dumps(command)}",
            "end tell",
        ):
            args += ["-e", line]

        try:
            proc = await asyncio.create_subprocess_exec(
                "osascript",
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            raise LaunchError(f"Failed to open terminal: {e}") from e
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.warning(f"Run manually: {command}")
            raise LaunchError(f"Failed to open terminal: {detail or proc.returncode}")

        logger.info(f"Opened terminal for session {session_id} on {node.name}")
        return command
