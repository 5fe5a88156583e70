"""
Tests for loader resolution: version selection, profile discovery, the
Fabric/Quilt profile install and the Forge/NeoForge installer run.
"""

import json
import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import FakeClock, FakeProcess, FakeSession, make_jar, mojang_upstream, sha1_of
from mcruntime.client import MetadataClient
from mcruntime.download import DownloadManager
from mcruntime.exceptions import LoaderInstallFailure, MissingMetadataFailure
from mcruntime.loaders import (LoaderResolver, expected_profile_id, is_auto_version, neoforge_version_prefix,
                               parse_maven_metadata_versions)
from mcruntime.models import LoaderKind
from mcruntime.routes import FORGE, forge_like_installer_urls, forge_like_metadata_urls
from mcruntime.versions import VersionResolver

FABRIC_LOADERS = "https://meta.fabricmc.net/v2/versions/loader/1.20.1"
FABRIC_PROFILE = "https://meta.fabricmc.net/v2/versions/loader/1.20.1/{}/profile/json"
FORGE_INSTALLER = forge_like_installer_urls(LoaderKind.FORGE, "1.20.1-47.2.0")[0]


def _fabric_profile(loader_version: str, mc_version: str = "1.20.1"):
    return {
        "id": f"fabric-loader-{loader_version}-{mc_version}",
        "inheritsFrom": mc_version,
        "mainClass": "net.fabricmc.loader.impl.launch.knot.KnotClient",
        "libraries": [{"name": f"net.fabricmc:fabric-loader:{loader_version}", "url": "https://maven.fabricmc.net/"}],
    }


def _forge_profile(pid: str = "1.20.1-forge-47.2.0", inherits: str = "1.20.1"):
    return {
        "id": pid,
        "inheritsFrom": inherits,
        "mainClass": "cpw.mods.bootstraplauncher.BootstrapLauncher",
        "libraries": [{"name": f"net.minecraftforge:fmlloader:{pid.replace('-forge-', '-')}"}],
    }


def _write_profile(layout, doc, mtime=None):
    path = layout.version_json_path(doc["id"])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc), encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _resolver(layout, routes, **kwargs):
    session = FakeSession(routes)
    client = MetadataClient(session, sleep=lambda s: None, cache_dir=layout.metadata_cache_dir)
    downloader = DownloadManager(session, sleep=lambda s: None)
    versions = VersionResolver(layout, client, downloader)
    return LoaderResolver(layout, client, downloader, versions, **kwargs), session


# ═══════════════════════════════════════════════════════════════════
#  Pure helpers
# ═══════════════════════════════════════════════════════════════════


class TestHelpers:
    @pytest.mark.parametrize("kind, mc, loader, expected", [
        (LoaderKind.FABRIC, "1.20.1", "0.15.7", "fabric-loader-0.15.7-1.20.1"),
        (LoaderKind.QUILT, "1.20.1", "0.23.1", "quilt-loader-0.23.1-1.20.1"),
        (LoaderKind.FORGE, "1.20.1", "47.2.0", "1.20.1-forge-47.2.0"),
        (LoaderKind.FORGE, "1.20.1", "1.20.1-47.2.0", "1.20.1-forge-47.2.0"),
        (LoaderKind.NEOFORGE, "1.20.4", "20.4.237", "neoforge-20.4.237"),
        (LoaderKind.NEOFORGE, "1.20.1", "47.1.99", "1.20.1-forge-47.1.99"),
    ])
    def test_expected_profile_id(self, kind, mc, loader, expected):
        """Installer naming scheme per loader (legacy NeoForge uses the forge scheme)."""
        assert expected_profile_id(kind, mc, loader) == expected

    def test_vanilla_has_no_profile(self):
        """Vanilla → ValueError."""
        with pytest.raises(ValueError):
            expected_profile_id(LoaderKind.VANILLA, "1.20.1", "x")

    def test_neoforge_prefix(self):
        """1.20.4 → '20.4.'; 1.21 → '21.0.'."""
        assert neoforge_version_prefix("1.20.4") == "20.4."
        assert neoforge_version_prefix("1.21") == "21.0."

    def test_auto_versions(self):
        """Empty/latest/recommended mean automatic selection."""
        assert is_auto_version(None) and is_auto_version("Latest") and is_auto_version("")
        assert not is_auto_version("0.15.7")

    def test_maven_metadata(self):
        """Versions in file order; malformed XML → ValueError."""
        xml = "<metadata><versioning><versions><version>1</version><version> 2 </version></versions>" \
              "</versioning></metadata>"
        assert parse_maven_metadata_versions(xml) == ["1", "2"]
        with pytest.raises(ValueError):
            parse_maven_metadata_versions("<metadata>")


# ═══════════════════════════════════════════════════════════════════
#  Version selection
# ═══════════════════════════════════════════════════════════════════


class TestVersionSelection:
    def test_fabric_first_stable(self, layout):
        """Automatic fabric selection skips unstable builds."""
        loaders = [{"loader": {"version": "0.16.0-beta.1", "stable": False}},
                   {"loader": {"version": "0.15.7", "stable": True}}]
        resolver, _ = _resolver(layout, {FABRIC_LOADERS: json.dumps(loaders)})
        assert resolver.resolve_loader_version(LoaderKind.FABRIC, "1.20.1") == "0.15.7"
        assert resolver.resolve_loader_version(LoaderKind.FABRIC, "1.20.1", "0.16.0-beta.1") == "0.16.0-beta.1"

    def test_fabric_unknown_requested(self, layout):
        """A requested build that is not listed → MissingMetadataFailure."""
        resolver, _ = _resolver(layout, {FABRIC_LOADERS: json.dumps([{"loader": {"version": "0.15.7"}}])})
        with pytest.raises(MissingMetadataFailure):
            resolver.resolve_loader_version(LoaderKind.FABRIC, "1.20.1", "0.1.0")

    def test_fabric_unsupported_game_version(self, layout):
        """Empty loader list → MissingMetadataFailure."""
        resolver, _ = _resolver(layout, {FABRIC_LOADERS: "[]"})
        with pytest.raises(MissingMetadataFailure):
            resolver.resolve_loader_version(LoaderKind.FABRIC, "1.20.1")

    def test_forge_promotions(self, layout):
        """Recommended promotion wins over latest."""
        promos = {"promos": {"1.20.1-recommended": "47.2.0", "1.20.1-latest": "47.3.0"}}
        resolver, _ = _resolver(layout, {FORGE.PROMOTIONS[0]: json.dumps(promos)})
        assert resolver.resolve_loader_version(LoaderKind.FORGE, "1.20.1") == "47.2.0"

    def test_forge_maven_fallback(self, layout):
        """No promotion → highest maven version for the game version."""
        xml = "<metadata><versioning><versions>" + "".join(
            f"<version>{v}</version>" for v in ("1.19.2-43.0.0", "1.20.1-47.1.0", "1.20.1-47.10.0")
        ) + "</versions></versioning></metadata>"
        routes = {FORGE.PROMOTIONS[0]: '{"promos": {}}',
                  forge_like_metadata_urls(LoaderKind.FORGE, "1.20.1")[0]: xml}
        resolver, _ = _resolver(layout, routes)
        assert resolver.resolve_loader_version(LoaderKind.FORGE, "1.20.1") == "47.10.0"

    def test_forge_requested_needs_no_network(self, layout):
        """Explicit forge versions are normalized locally."""
        resolver, session = _resolver(layout, {})
        assert resolver.resolve_loader_version(LoaderKind.FORGE, "1.20.1", "1.20.1-47.2.0") == "47.2.0"
        assert session.calls == []

    def test_neoforge_stable_for_game_version(self, layout):
        """Highest stable build with the game-version prefix."""
        xml = "<metadata><versioning><versions>" + "".join(
            f"<version>{v}</version>" for v in ("20.4.80-beta", "20.4.237", "20.4.190", "20.6.1", "20.4.300-beta")
        ) + "</versions></versioning></metadata>"
        resolver, _ = _resolver(layout, {forge_like_metadata_urls(LoaderKind.NEOFORGE, "1.20.4")[0]: xml})
        assert resolver.resolve_loader_version(LoaderKind.NEOFORGE, "1.20.4") == "20.4.237"

    def test_neoforge_none(self, layout):
        """No build for the game version → MissingMetadataFailure."""
        xml = "<metadata><versioning><versions><version>20.6.1</version></versions></versioning></metadata>"
        resolver, _ = _resolver(layout, {forge_like_metadata_urls(LoaderKind.NEOFORGE, "1.20.4")[0]: xml})
        with pytest.raises(MissingMetadataFailure):
            resolver.resolve_loader_version(LoaderKind.NEOFORGE, "1.20.4")


# ═══════════════════════════════════════════════════════════════════
#  Installed profiles
# ═══════════════════════════════════════════════════════════════════


class TestInstalledProfiles:
    def test_exact_id(self, layout):
        """The expected id with valid evidence is found."""
        _write_profile(layout, _fabric_profile("0.15.7"))
        resolver = LoaderResolver(layout, MagicMock(), MagicMock(), MagicMock())
        profile = resolver.find_installed_profile(LoaderKind.FABRIC, "1.20.1", "0.15.7")
        assert profile.profile_id == "fabric-loader-0.15.7-1.20.1"
        assert profile.loader_version == "0.15.7"

    def test_relaxed_newest(self, layout):
        """Without a version the newest matching profile wins; neoforge and other bases skipped."""
        _write_profile(layout, _forge_profile("1.20.1-forge-47.1.0"), mtime=1_000_000)
        _write_profile(layout, _forge_profile("1.20.1-forge-47.2.0"), mtime=2_000_000)
        _write_profile(layout, _forge_profile("1.19.2-forge-43.0.0", inherits="1.19.2"), mtime=3_000_000)
        _write_profile(layout, {**_forge_profile("neoforge-20.4.237"), "inheritsFrom": "1.20.1"}, mtime=4_000_000)
        resolver = LoaderResolver(layout, MagicMock(), MagicMock(), MagicMock())
        profile = resolver.find_installed_profile(LoaderKind.FORGE, "1.20.1")
        assert profile.profile_id == "1.20.1-forge-47.2.0"
        assert profile.loader_version == "47.2.0"

    def test_evidence_required(self, layout):
        """A profile with a vanilla main class is not reused."""
        _write_profile(layout, {**_fabric_profile("0.15.7"), "mainClass": "net.minecraft.client.main.Main"})
        resolver = LoaderResolver(layout, MagicMock(), MagicMock(), MagicMock())
        assert resolver.find_installed_profile(LoaderKind.FABRIC, "1.20.1", "0.15.7") is None

    def test_reuse_skips_network(self, layout):
        """ensure_profile reuses an installed profile without metadata calls."""
        _write_profile(layout, _fabric_profile("0.15.7"))
        client = MagicMock()
        resolver = LoaderResolver(layout, client, MagicMock(), MagicMock())
        profile = resolver.ensure_profile(LoaderKind.FABRIC, "1.20.1", "0.15.7")
        assert profile.document["jar"] == "1.20.1"
        client.get_json.assert_not_called()
        client.get_text.assert_not_called()


# ═══════════════════════════════════════════════════════════════════
#  Fabric / Quilt install
# ═══════════════════════════════════════════════════════════════════


class TestFabricInstall:
    def test_install(self, layout):
        """Profile fetched, pinned to the game version and written to versions/<id>/."""
        routes = {FABRIC_LOADERS: json.dumps([{"loader": {"version": "0.15.7", "stable": True}}]),
                  FABRIC_PROFILE.format("0.15.7"): json.dumps(_fabric_profile("0.15.7"))}
        resolver, _ = _resolver(layout, routes)
        profile = resolver.ensure_profile(LoaderKind.FABRIC, "1.20.1")
        assert profile.profile_id == "fabric-loader-0.15.7-1.20.1"
        stored = json.loads(layout.version_json_path(profile.profile_id).read_text(encoding="utf-8"))
        assert stored["inheritsFrom"] == "1.20.1" and stored["jar"] == "1.20.1"

    def test_stable_fallback(self, layout):
        """Exact profile missing → the service's stable alias, with the real version recorded."""
        routes = {FABRIC_PROFILE.format("stable"): json.dumps(_fabric_profile("0.15.6"))}
        resolver, session = _resolver(layout, routes)
        profile = resolver.install_fabric_like(LoaderKind.FABRIC, "1.20.1", "0.15.7")
        assert profile.loader_version == "0.15.6"
        assert session.calls == [FABRIC_PROFILE.format("0.15.7"), FABRIC_PROFILE.format("stable")]

    def test_profile_without_id(self, layout):
        """A profile with no id → MissingMetadataFailure."""
        resolver, _ = _resolver(layout, {FABRIC_PROFILE.format("0.15.7"): '{"mainClass": "x"}'})
        with pytest.raises(MissingMetadataFailure):
            resolver.install_fabric_like(LoaderKind.FABRIC, "1.20.1", "0.15.7")


# ═══════════════════════════════════════════════════════════════════
#  Forge / NeoForge installer
# ═══════════════════════════════════════════════════════════════════


class TestInstaller:
    @pytest.fixture
    def forge_routes(self, tmp_path: Path):
        routes, _ = mojang_upstream(tmp_path)
        lib = make_jar(tmp_path / "upstream" / "lib.jar", {"A.class": b"\xca\xfe"}).read_bytes()
        lib_url = "https://maven.minecraftforge.net/net/minecraftforge/eventbus/6.0.5/eventbus-6.0.5.jar"
        install_profile = {"libraries": [{
            "name": "net.minecraftforge:eventbus:6.0.5",
            "downloads": {"artifact": {"path": "net/minecraftforge/eventbus/6.0.5/eventbus-6.0.5.jar",
                                       "url": lib_url, "sha1": sha1_of(lib), "size": len(lib)}},
        }]}
        installer = make_jar(tmp_path / "upstream" / "installer.jar",
                             {"install_profile.json": json.dumps(install_profile)})
        routes.update({FORGE_INSTALLER: installer.read_bytes(), lib_url: lib})
        return routes

    def _installing_popen(self, layout, calls, **proc_kwargs):
        def _popen(cmd, **kwargs):
            calls.append(cmd)
            _write_profile(layout, _forge_profile())
            return FakeProcess(**proc_kwargs)
        return _popen

    def test_install_forge(self, layout, forge_routes, java17):
        """Vanilla prepared, libraries prefetched, installer run, profile discovered and normalized."""
        calls = []
        clock = FakeClock()
        resolver, _ = _resolver(layout, forge_routes, sleep=clock.sleep, clock=clock,
                                popen=self._installing_popen(layout, calls, exit_code=0, polls_until_exit=2))
        profile = resolver.ensure_profile(LoaderKind.FORGE, "1.20.1", "47.2.0", java=java17)
        assert profile.profile_id == "1.20.1-forge-47.2.0"
        assert profile.document["launchTarget"] == "forgeclient"
        installer = layout.downloads_dir / "forge-1.20.1-47.2.0-installer.jar"
        assert calls == [[str(java17.path), "-jar", str(installer), "--installClient", str(layout.root)]]
        assert (layout.root / "launcher_profiles.json").is_file()
        assert (layout.libraries_dir / "net/minecraftforge/eventbus/6.0.5/eventbus-6.0.5.jar").is_file()
        assert layout.version_jar_path("1.20.1").is_file()
        assert list(layout.logs_dir.glob("installer-forge-1.20.1-47.2.0-*.log"))

    def test_timeout_kills(self, layout, forge_routes, java17):
        """An installer that never exits is killed at the deadline."""
        procs = []

        def _popen(cmd, **kwargs):
            procs.append(FakeProcess(exit_code=None))
            return procs[-1]

        clock = FakeClock()
        resolver, _ = _resolver(layout, forge_routes, popen=_popen, sleep=clock.sleep, clock=clock,
                                installer_timeout=5, poll_interval=1)
        with pytest.raises(LoaderInstallFailure) as excinfo:
            resolver.run_installer(LoaderKind.FORGE, "1.20.1", "47.2.0", java17)
        assert "timed out" in excinfo.value.message
        assert procs[0].killed

    def test_nonzero_exit(self, layout, forge_routes, java17):
        """Exit code ≠ 0 → LoaderInstallFailure carrying the code."""
        resolver, _ = _resolver(layout, forge_routes, popen=lambda cmd, **kw: FakeProcess(exit_code=3),
                                sleep=lambda s: None)
        with pytest.raises(LoaderInstallFailure) as excinfo:
            resolver.run_installer(LoaderKind.FORGE, "1.20.1", "47.2.0", java17)
        assert excinfo.value.code == 3

    def test_no_profile_left(self, layout, forge_routes, java17):
        """Clean exit without a discoverable profile → LoaderInstallFailure."""
        resolver, _ = _resolver(layout, forge_routes, popen=lambda cmd, **kw: FakeProcess(exit_code=0),
                                sleep=lambda s: None)
        with pytest.raises(LoaderInstallFailure):
            resolver.run_installer(LoaderKind.FORGE, "1.20.1", "47.2.0", java17)

    def test_cannot_start(self, layout, forge_routes, java17):
        """OSError from the process spawn → LoaderInstallFailure."""
        def _popen(cmd, **kwargs):
            raise OSError("exec format error")

        resolver, _ = _resolver(layout, forge_routes, popen=_popen)
        with pytest.raises(LoaderInstallFailure):
            resolver.run_installer(LoaderKind.FORGE, "1.20.1", "47.2.0", java17)

    def test_java_required(self, layout):
        """Installer loaders without a Java runtime fail before any download."""
        resolver, session = _resolver(layout, {})
        with pytest.raises(LoaderInstallFailure):
            resolver.ensure_profile(LoaderKind.FORGE, "1.20.1", "47.2.0")
        assert session.calls == []
