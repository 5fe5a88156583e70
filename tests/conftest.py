"""
Shared test fixtures and fakes.

No test touches the network: HTTP goes through FakeSession, processes
through FakeProcess.
"""

from __future__ import annotations

import hashlib
import json
import zipfile
from pathlib import Path
from typing import *

import pytest

from mcruntime.config import EngineConfig
from mcruntime.launch_plan import LaunchPlanBuilder
from mcruntime.models import InstanceRecord, JavaRuntime, LaunchAuth, LaunchPlan
from mcruntime.paths import InstancePaths, LauncherLayout

CLIENT_JAR_BYTES = 600 * 1024


# ═══════════════════════════════════════════════════════════════════
#  HTTP fakes
# ═══════════════════════════════════════════════════════════════════


class FakeResponse:
    def __init__(self, status: int = 200, body: Union[bytes, str] = b"",
                 headers: Optional[Dict[str, str]] = None, reason: str = ""):
        self.status_code = status
        self.content = body.encode("utf-8") if isinstance(body, str) else body
        self.headers = dict(headers or {})
        self.reason = reason or ("OK" if status < 400 else "Error")
        self.closed = False

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def iter_content(self, chunk_size: int = 65536):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """
    Maps URLs to responses. A value may be a FakeResponse, bytes/str (200),
    a list consumed one item per request, or a callable(url, headers).
    Unknown URLs answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.calls: List[str] = []
        self.closed = False

    def add(self, url: str, value: Any) -> None:
        self.routes[url] = value

    def get(self, url: str, stream: bool = False, headers: Optional[Dict[str, str]] = None,
            timeout: Any = None) -> FakeResponse:
        self.calls.append(url)
        value = self.routes.get(url)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if callable(value) and not isinstance(value, FakeResponse):
            value = value(url, headers or {})
        if value is None:
            return FakeResponse(404)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, FakeResponse):
            return value
        return FakeResponse(200, value)

    def close(self) -> None:
        self.closed = True


class ExplodingSession(FakeSession):
    """Fails the test on any request."""

    def get(self, url: str, **kwargs) -> FakeResponse:
        raise AssertionError(f"unexpected network request: {url}")


# ═══════════════════════════════════════════════════════════════════
#  Process fakes
# ═══════════════════════════════════════════════════════════════════


class FakeProcess:
    """Popen stand-in: exits with `exit_code` after `polls_until_exit` polls, or never (None)."""

    _next_pid = 4000

    def __init__(self, exit_code: Optional[int] = None, polls_until_exit: int = 0):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self._exit_code = exit_code
        self._polls_left = polls_until_exit
        self.returncode: Optional[int] = None
        self.killed = False

    def poll(self) -> Optional[int]:
        if self._exit_code is None or self.killed:
            return self.returncode
        if self._polls_left > 0:
            self._polls_left -= 1
            return None
        self.returncode = self._exit_code
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if self.killed:
            self.returncode = -9
        elif self.returncode is None:
            self.returncode = self._exit_code if self._exit_code is not None else 0
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


# ═══════════════════════════════════════════════════════════════════
#  File builders
# ═══════════════════════════════════════════════════════════════════


def sha1_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def make_jar(path: Path, entries: Dict[str, Union[bytes, str]]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


def make_client_jar(path: Path, size: int = CLIENT_JAR_BYTES, markers: bool = True) -> Path:
    """A stored (uncompressed) zip larger than `size` with the client entrypoint class."""
    entries: Dict[str, Union[bytes, str]] = {"assets/padding.bin": b"\0" * size}
    if markers:
        entries["net/minecraft/client/main/Main.class"] = b"\xca\xfe\xba\xbe"
    return make_jar(path, entries)


def make_mod(path: Path, loader: str = "fabric", mod_id: str = "examplemod") -> Path:
    if loader == "fabric":
        meta = {"fabric.mod.json": json.dumps({"schemaVersion": 1, "id": mod_id, "version": "1.0",
                                               "depends": {"minecraft": "1.20.1"}})}
    elif loader == "quilt":
        meta = {"quilt.mod.json": json.dumps({"schema_version": 1,
                                              "quilt_loader": {"id": mod_id, "version": "1.0"}})}
    elif loader == "neoforge":
        meta = {"META-INF/neoforge.mods.toml": f'modLoader="javafml"\n[[mods]]\nmodId="{mod_id}"\n'}
    else:
        meta = {"META-INF/mods.toml": f'modLoader="javafml"\n[[mods]]\nmodId="{mod_id}"\n'}
    return make_jar(path, {**meta, f"{mod_id}/Mod.class": b"\xca\xfe\xba\xbe"})


def vanilla_document(version: str, jar: Optional[Path] = None, *, base_url: str = "https://piston-data.mojang.com",
                     libraries: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Minimal modern version document; declares the sha1 of `jar` when given."""
    client: Dict[str, Any] = {"url": f"{base_url}/v1/objects/client/{version}.jar"}
    if jar is not None:
        data = jar.read_bytes()
        client.update({"sha1": sha1_of(data), "size": len(data)})
    return {
        "id": version,
        "type": "release",
        "mainClass": "net.minecraft.client.main.Main",
        "assets": "5",
        "assetIndex": {"id": "5", "url": "https://piston-meta.mojang.com/v1/packages/idx/5.json"},
        "downloads": {"client": client},
        "javaVersion": {"component": "java-runtime-gamma", "majorVersion": 17},
        "libraries": libraries or [],
        "arguments": {
            "game": ["--username", "${auth_player_name}", "--version", "${version_name}",
                     "--gameDir", "${game_directory}", "--assetsDir", "${assets_root}",
                     "--assetIndex", "${assets_index_name}", "--uuid", "${auth_uuid}",
                     "--accessToken", "${auth_access_token}", "--clientId", "${clientid}",
                     "--userType", "${user_type}",
                     {"rules": [{"action": "allow", "features": {"is_demo_user": True}}], "value": "--demo"}],
            "jvm": ["-Djava.library.path=${natives_directory}", "-cp", "${classpath}"],
        },
    }


MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
LIBRARY_URL = "https://libraries.minecraft.net/com/mojang/brigadier/1.1.8/brigadier-1.1.8.jar"


def mojang_upstream(tmp_path: Path, version: str = "1.20.1") -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Routes serving one complete vanilla version (manifest, version document,
    client jar, one library, asset index, one asset object) and the document.
    """
    upstream = tmp_path / "upstream"
    jar = make_client_jar(upstream / f"{version}.jar")
    lib_bytes = make_jar(upstream / "brigadier.jar", {"com/mojang/brigadier/Command.class": b"\xca\xfe"}).read_bytes()
    asset = b"asset-bytes"
    asset_hash = sha1_of(asset)
    index_text = json.dumps({"objects": {"minecraft/sounds/a.ogg": {"hash": asset_hash, "size": len(asset)}}})

    doc = vanilla_document(version, jar, libraries=[{
        "name": "com.mojang:brigadier:1.1.8",
        "downloads": {"artifact": {"path": "com/mojang/brigadier/1.1.8/brigadier-1.1.8.jar",
                                   "url": LIBRARY_URL, "sha1": sha1_of(lib_bytes), "size": len(lib_bytes)}},
    }])
    doc["assetIndex"].update(sha1=sha1_of(index_text.encode("utf-8")), size=len(index_text.encode("utf-8")))
    doc_text = json.dumps(doc)
    doc_sha1 = sha1_of(doc_text.encode("utf-8"))
    doc_url = f"https://piston-meta.mojang.com/v1/packages/{doc_sha1}/{version}.json"
    manifest = {
        "latest": {"release": version, "snapshot": version},
        "versions": [{"id": version, "type": "release", "url": doc_url, "sha1": doc_sha1,
                      "releaseTime": "2023-06-12T13:25:51+00:00"}],
    }
    routes = {
        MANIFEST_URL: json.dumps(manifest),
        doc_url: doc_text,
        doc["downloads"]["client"]["url"]: jar.read_bytes(),
        LIBRARY_URL: lib_bytes,
        doc["assetIndex"]["url"]: index_text,
        f"https://resources.download.minecraft.net/{asset_hash[:2]}/{asset_hash}": asset,
    }
    return routes, doc


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════


@pytest.fixture
def layout(tmp_path: Path) -> LauncherLayout:
    """Empty launcher layout with every shared directory created."""
    return LauncherLayout(tmp_path / "launcher").ensure_dirs()


@pytest.fixture
def instance_root(layout: LauncherLayout) -> Path:
    root = layout.instance_dir("test")
    root.mkdir(parents=True, exist_ok=True)
    (root / "instance.json").write_text(json.dumps({"id": "test", "name": "Test"}), encoding="utf-8")
    return root


@pytest.fixture
def instance_paths(instance_root: Path) -> InstancePaths:
    return InstancePaths(instance_root).ensure_dirs()


@pytest.fixture
def java_binary(tmp_path: Path) -> Path:
    """An (unexecuted) java executable path that exists on disk."""
    path = tmp_path / "jdk" / "bin" / "java"
    path.parent.mkdir(parents=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    return path


@pytest.fixture
def java17(java_binary: Path) -> JavaRuntime:
    return JavaRuntime(path=java_binary, major=17, version="17.0.10", source="custom")


@pytest.fixture
def make_record(instance_root: Path, java_binary: Path):
    def _make(version: str = "1.20.1", loader: str = "vanilla", **kwargs) -> InstanceRecord:
        kwargs.setdefault("java_mode", "custom")
        kwargs.setdefault("java_path", str(java_binary))
        return InstanceRecord(id="test", name="Test", version=version, loader=loader, root=instance_root,
                              **kwargs)
    return _make


# ═══════════════════════════════════════════════════════════════════
#  Installed runtime + launch plan
# ═══════════════════════════════════════════════════════════════════


BRIGADIER_PATH = "com/mojang/brigadier/1.1.8/brigadier-1.1.8.jar"


def install_vanilla(layout: LauncherLayout, version: str = "1.20.1",
                    extra_libraries: Sequence[str] = ()) -> Dict[str, Any]:
    """
    Put a complete vanilla version into `layout` (client jar, one library
    plus any `extra_libraries` relative paths) and return its document.
    """
    jar = make_client_jar(layout.version_jar_path(version))
    libraries = []
    for rel in (BRIGADIER_PATH, *extra_libraries):
        make_jar(layout.libraries_dir / rel, {"Marker.class": b"\xca\xfe\xba\xbe"})
        parts = rel.split("/")
        name = f"{'.'.join(parts[:-3])}:{parts[-3]}:{parts[-2]}"
        libraries.append({"name": name, "downloads": {"artifact": {
            "path": rel, "url": f"https://libraries.minecraft.net/{rel}"}}})
    doc = vanilla_document(version, jar, libraries=libraries)
    doc_path = layout.version_json_path(version)
    doc_path.parent.mkdir(parents=True, exist_ok=True)
    doc_path.write_text(json.dumps(doc), encoding="utf-8")
    return doc


@pytest.fixture
def engine_config(layout: LauncherLayout) -> EngineConfig:
    return EngineConfig(launcher_root=layout.root, global_cache_dir=layout.root.parent / "global")


@pytest.fixture
def plan_builder(layout: LauncherLayout, engine_config: EngineConfig) -> LaunchPlanBuilder:
    return LaunchPlanBuilder(layout, engine_config, os_name="linux")


@pytest.fixture
def built_plan(layout, instance_paths, make_record, java17, plan_builder) -> LaunchPlan:
    """A persisted, fully valid vanilla 1.20.1 plan."""
    doc = install_vanilla(layout)
    plan = plan_builder.build(record=make_record(), paths=instance_paths, document=doc, java=java17,
                              auth=LaunchAuth.offline("Steve"), required_java_major=17)
    plan_builder.persist(instance_paths, plan, doc)
    return plan
