"""Tests for the package phase."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from xcode_ci.build.package import make_ipa, package_for_channel, release_app_path
from xcode_ci.build.policy import Channel
from xcode_ci.build.state import BuildError


@pytest.fixture
def session(artifacts_dir):
    artifacts_dir.mkdir()
    session = MagicMock()
    session.artifacts_dir = artifacts_dir
    session.run_tool = AsyncMock(return_value=("", ""))
    return session


@pytest.fixture
def home(provisioning_home):
    return provisioning_home


@pytest.fixture
def release_app(artifacts_dir):
    app = release_app_path(artifacts_dir, "Chaching")
    app.mkdir(parents=True)
    return app


def test_release_app_path(tmp_path):
    assert release_app_path(tmp_path, "App") == (
        tmp_path / "Release-iphoneos" / "Applications" / "App.app"
    )


class TestPackageForChannel:
    """Tests for package_for_channel."""

    @pytest.mark.asyncio
    async def test_local_is_noop(self, session, project_config, home):
        assert await package_for_channel(session, Channel.LOCAL, project_config, home) is None
        session.run_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_skips_profile_lookup(self, session, project_config):
        with patch("xcode_ci.build.package.select_provisioning_profile") as select:
            assert await package_for_channel(session, Channel.LOCAL, project_config) is None
        select.assert_not_called()

    @pytest.mark.asyncio
    async def test_enterprise(self, session, project_config, home, release_app, artifacts_dir):
        ipa = await package_for_channel(session, Channel.ENTERPRISE, project_config, home)

        assert ipa == artifacts_dir / "Chaching.ipa"
        session.run_tool.assert_awaited_once()
        command = session.run_tool.await_args.args[0]
        assert command[:4] == ["xcrun", "-sdk", "iphoneos", "PackageApplication"]
        assert command[command.index("-v") + 1] == str(release_app)
        assert command[command.index("-o") + 1] == str(ipa)
        assert command[command.index("--sign") + 1] == "iPhone Distribution"
        assert command[command.index("--embed") + 1].endswith(
            "4PZ44KB26X.com.example.chaching.internal_Internal.mobileprovision"
        )

    @pytest.mark.asyncio
    async def test_distribution(self, session, project_config, home, release_app):
        await package_for_channel(session, Channel.DISTRIBUTION, project_config, home)

        command = session.run_tool.await_args.args[0]
        assert command[command.index("--embed") + 1].endswith(
            "62J96EUJ9N.com.example.chaching_AppStore.mobileprovision"
        )

    @pytest.mark.asyncio
    async def test_missing_profile(self, session, project_config, tmp_path, release_app):
        with pytest.raises(BuildError, match="Provisioning profile not found"):
            await package_for_channel(session, Channel.ENTERPRISE, project_config, tmp_path)
        session.run_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_app(self, session, project_config, home):
        with pytest.raises(BuildError, match="Application bundle not found"):
            await package_for_channel(session, Channel.DISTRIBUTION, project_config, home)
        session.run_tool.assert_not_awaited()


class TestMakeIpa:
    """Tests for make_ipa."""

    @pytest.mark.asyncio
    async def test_custom_identity(self, session, release_app, tmp_path, artifacts_dir):
        profile = tmp_path / "p.mobileprovision"
        profile.write_bytes(b"p")

        ipa = await make_ipa(session, release_app, profile, "Custom.ipa", "iPhone Distribution: Acme")

        assert ipa == artifacts_dir / "Custom.ipa"
        command = session.run_tool.await_args.args[0]
        assert command[command.index("--sign") + 1] == "iPhone Distribution: Acme"
