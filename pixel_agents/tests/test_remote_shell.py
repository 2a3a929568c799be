import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from pixel_agents.models import ClusterNode
from pixel_agents.watchers import remote as remote_module
from pixel_agents.watchers.remote import RemoteShell, quote_remote_path

NODE = ClusterNode(name="gpu-1", address="gpu-1.lan", isLocal=False)


class _FakeProcess:
    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"", hang: bool = False) -> None:
        self.returncode = None
        self._final_code = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(10)
        self.returncode = self._final_code
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode


class RemoteShellTests(unittest.IsolatedAsyncioTestCase):
    def test_build_args(self) -> None:
        shell = RemoteShell(ssh_binary="ssh", connect_timeout=3, stream_connect_timeout=5, server_alive_interval=30)
        self.assertEqual(
            shell.build_args(NODE, "echo hi"),
            ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=3", "-o", "StrictHostKeyChecking=no", "gpu-1.lan", "echo hi"],
        )
        streaming = shell.build_args(NODE, "tail -f x", streaming=True)
        self.assertIn("ConnectTimeout=5", streaming)
        self.assertIn("ServerAliveInterval=30", streaming)

    def test_quote_remote_path_keeps_home(self) -> None:
        self.assertEqual(quote_remote_path("~/.claude/projects"), '"$HOME"/.claude/projects')
        self.assertEqual(quote_remote_path("/srv/my dir"), "'/srv/my dir'")

    async def test_run_returns_stdout(self) -> None:
        spawn = AsyncMock(return_value=_FakeProcess(stdout=b"a\nb\n"))
        with patch.object(remote_module.asyncio, "create_subprocess_exec", new=spawn):
            output = await RemoteShell().run(NODE, "ls")
        self.assertEqual(output, "a\nb\n")

    async def test_run_failure_returns_none(self) -> None:
        spawn = AsyncMock(return_value=_FakeProcess(returncode=255, stderr=b"Connection refused"))
        with patch.object(remote_module.asyncio, "create_subprocess_exec", new=spawn):
            self.assertIsNone(await RemoteShell().run(NODE, "ls"))

    async def test_run_timeout_kills_process(self) -> None:
        process = _FakeProcess(hang=True)
        spawn = AsyncMock(return_value=process)
        with patch.object(remote_module.asyncio, "create_subprocess_exec", new=spawn):
            self.assertIsNone(await RemoteShell(command_timeout=0.05).run(NODE, "ls"))
        self.assertTrue(process.killed)

    async def test_missing_binary_returns_none(self) -> None:
        spawn = AsyncMock(side_effect=FileNotFoundError("ssh"))
        with patch.object(remote_module.asyncio, "create_subprocess_exec", new=spawn):
            self.assertIsNone(await RemoteShell().run(NODE, "ls"))


if __name__ == "__main__":
    unittest.main()
