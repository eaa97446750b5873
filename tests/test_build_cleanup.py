"""Tests for artifact tree reset and daemon helper teardown."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import make_hanging_process, make_process
from xcode_ci.build.cleanup import (
    DAEMON_LABEL,
    launch_daemon_helper,
    remove_daemon_helper,
    remove_tree,
    reset_artifacts,
)
from xcode_ci.build.state import BuildError, ToolError


class TestResetArtifacts:
    """Tests for reset_artifacts."""

    def test_creates_missing_tree(self, artifacts_dir):
        assert reset_artifacts(artifacts_dir) == artifacts_dir
        assert artifacts_dir.is_dir()

    def test_empties_existing_tree(self, artifacts_dir):
        (artifacts_dir / "Release-iphoneos" / "Applications").mkdir(parents=True)
        (artifacts_dir / "old.ipa").write_bytes(b"ipa")
        (artifacts_dir / "output.txt").write_text("previous run")

        reset_artifacts(artifacts_dir)

        assert artifacts_dir.is_dir()
        assert list(artifacts_dir.iterdir()) == []

    def test_replaces_file(self, artifacts_dir):
        artifacts_dir.write_text("not a directory")

        reset_artifacts(artifacts_dir)

        assert artifacts_dir.is_dir()

    def test_failure_raises_build_error(self, artifacts_dir):
        with patch("xcode_ci.build.cleanup.shutil.rmtree", side_effect=PermissionError("denied")):
            artifacts_dir.mkdir()
            with pytest.raises(BuildError, match="Cannot reset artifact directory"):
                reset_artifacts(artifacts_dir)


class TestRemoveTree:
    """Tests for remove_tree."""

    def test_removes_directory(self, tmp_path):
        target = tmp_path / "UnitTests" / "Applications"
        target.mkdir(parents=True)

        remove_tree(tmp_path / "UnitTests")

        assert not (tmp_path / "UnitTests").exists()

    def test_missing_is_noop(self, tmp_path):
        remove_tree(tmp_path / "missing")


class TestRemoveDaemonHelper:
    """Tests for remove_daemon_helper."""

    @pytest.mark.asyncio
    async def test_success(self):
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            mock_exec.return_value = make_process(0)

            assert await remove_daemon_helper() is True

        assert mock_exec.call_args.args == ("launchctl", "remove", DAEMON_LABEL)

    @pytest.mark.asyncio
    async def test_nonzero_exit_does_not_raise(self):
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            mock_exec.return_value = make_process(3)

            assert await remove_daemon_helper("Other") is False

    @pytest.mark.asyncio
    async def test_missing_launchctl_does_not_raise(self):
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("launchctl")),
        ):
            assert await remove_daemon_helper() is False

    @pytest.mark.asyncio
    async def test_timeout_kills_and_reaps(self):
        process = make_hanging_process()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await remove_daemon_helper(timeout=0.05) is False

        process.kill.assert_called_once()
        assert process.wait.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout_with_exited_process(self):
        process = make_hanging_process()
        process.kill.side_effect = ProcessLookupError()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with patch("xcode_ci.build.cleanup.reap_process", AsyncMock()) as reap:
                assert await remove_daemon_helper(timeout=0.05) is False

        reap.assert_awaited_once_with(process)


class TestLaunchDaemonHelper:
    """Tests for the scoped daemon helper."""

    @pytest.fixture
    def script(self, xcode_project):
        return xcode_project / "build" / "RunIPhoneLaunchDaemons.sh"

    @pytest.fixture
    def session(self):
        session = MagicMock()
        session.run_tool = AsyncMock(return_value=("", ""))
        return session

    @pytest.mark.asyncio
    async def test_submit_and_remove(self, session, script, tmp_path):
        with patch(
            "xcode_ci.build.cleanup.remove_daemon_helper", AsyncMock(return_value=True)
        ) as mock_remove:
            async with launch_daemon_helper(session, script, "/sdk", tmp_path / "home") as label:
                assert label == DAEMON_LABEL
                mock_remove.assert_not_awaited()

        session.run_tool.assert_awaited_once_with(
            [
                "launchctl",
                "submit",
                "-l",
                DAEMON_LABEL,
                "--",
                str(script),
                "/sdk",
                str(tmp_path / "home"),
            ]
        )
        mock_remove.assert_awaited_once_with(DAEMON_LABEL)

    @pytest.mark.asyncio
    async def test_removed_on_error(self, session, script, tmp_path):
        with patch(
            "xcode_ci.build.cleanup.remove_daemon_helper", AsyncMock(return_value=True)
        ) as mock_remove:
            with pytest.raises(ToolError):
                async with launch_daemon_helper(session, script, "/sdk", tmp_path):
                    raise ToolError(["ChachingTests"], 1)

        mock_remove.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_removed_on_cancel(self, session, script, tmp_path):
        entered = asyncio.Event()

        async def body():
            async with launch_daemon_helper(session, script, "/sdk", tmp_path):
                entered.set()
                await asyncio.sleep(10)

        with patch(
            "xcode_ci.build.cleanup.remove_daemon_helper", AsyncMock(return_value=True)
        ) as mock_remove:
            task = asyncio.create_task(body())
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        mock_remove.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_script(self, session, tmp_path):
        with pytest.raises(BuildError, match="Daemon helper script not found"):
            async with launch_daemon_helper(session, tmp_path / "nope.sh", "/sdk", tmp_path):
                pass
        session.run_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_submit_failure_skips_removal(self, session, script, tmp_path):
        session.run_tool.side_effect = ToolError(["launchctl"], 1)

        with patch("xcode_ci.build.cleanup.remove_daemon_helper", AsyncMock()) as mock_remove:
            with pytest.raises(ToolError):
                async with launch_daemon_helper(session, script, "/sdk", tmp_path):
                    pass

        mock_remove.assert_not_awaited()
