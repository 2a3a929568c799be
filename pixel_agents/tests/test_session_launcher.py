import unittest
from unittest.mock import AsyncMock, patch

from pixel_agents.models import ClusterNode
from pixel_agents.services import launcher as launcher_module
from pixel_agents.services.launcher import LaunchError, SessionLauncher
from pixel_agents.watchers.remote import RemoteShell


class _FakeProcess:
    def __init__(self, returncode: int, stderr: bytes = b"") -> None:
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr


class SessionLauncherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.local = ClusterNode(name="mac")
        self.remote = ClusterNode(name="gpu-1", address="gpu-1.lan", isLocal=False)

    def test_build_command(self) -> None:
        launcher = SessionLauncher(RemoteShell(), claude_binary="claude", platform="linux")
        self.assertEqual(
            launcher.build_command(self.local, "/Users/dev/my app", "abc"),
            "cd '/Users/dev/my app' && claude --session-id abc",
        )
        remote = launcher.build_command(self.remote, "/srv/app", "abc")
        self.assertTrue(remote.startswith("ssh -t gpu-1.lan "))
        self.assertIn("--session-id abc", remote)

    async def test_non_macos_only_logs_the_command(self) -> None:
        launcher = SessionLauncher(RemoteShell(), platform="linux")
        with patch.object(launcher_module.asyncio, "create_subprocess_exec", new=AsyncMock()) as spawn:
            with self.assertLogs("pixel_agents.launcher", level="INFO"):
                command = await launcher.launch(self.local, "/srv/app", "abc")
        spawn.assert_not_called()
        self.assertIn("--session-id abc", command)

    async def test_macos_opens_terminal(self) -> None:
        launcher = SessionLauncher(RemoteShell(), platform="darwin")
        spawn = AsyncMock(return_value=_FakeProcess(0))
        with patch.object(launcher_module.asyncio, "create_subprocess_exec", new=spawn):
            await launcher.launch(self.local, "/srv/app", "abc")
        args = spawn.call_args.args
        self.assertEqual(args[0], "osascript")
        self.assertIn('tell application "Terminal"', args)

    async def test_osascript_failure_raises(self) -> None:
        launcher = SessionLauncher(RemoteShell(), platform="darwin")
        spawn = AsyncMock(return_value=_FakeProcess(1, b"not allowed"))
        with patch.object(launcher_module.asyncio, "create_subprocess_exec", new=spawn):
            with self.assertRaises(LaunchError):
                await launcher.launch(self.local, "/srv/app", "abc")


if __name__ == "__main__":
    unittest.main()
