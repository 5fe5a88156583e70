"""
mcruntime.paths
---------------

Platform-aware path helpers and the two directory layouts the engine works with.

Responsibilities
- LauncherLayout: the shared launcher data directory (versions, libraries,
  assets, runtimes, instances, caches) used by every instance.
- InstancePaths: the per-instance artifacts (metadata, resolved game directory,
  persisted plan, runtime snapshot, logs, diagnostics, state document).
- Default locations per OS for the launcher root and the global cache.

Usage
-----
from pathlib import Path
from mcruntime.paths import LauncherLayout, InstancePaths

layout = LauncherLayout(Path("/games/launcher"))
layout.ensure_dirs()
paths = InstancePaths(layout.instance_dir("pack1"))
"""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import *

from .fileops import read_json


def _slugify(value: str) -> str:
    """
    Minimal slugify implementation for filesystem-safe names.
    Keeps letters, digits, underscores, dots and hyphens. Converts spaces to hyphens.
    """
    value = str(value).strip().lower()
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"[^a-z0-9\-_\.]", "", value)
    value = re.sub(r"-{2,}", "-", value)
    return value or "instance"


def _ensure_dir(path: Path, mode: int = 0o755) -> Path:
    path = Path(path)
    path.mkdir(mode=mode, parents=True, exist_ok=True)
    return path


def current_os_name() -> str:
    """Return the launcher-style OS name: "windows", "osx" or "linux"."""
    system = platform.system().lower()
    if system.startswith("win"):
        return "windows"
    if system == "darwin":
        return "osx"
    return "linux"


def default_launcher_root() -> Path:
    """
    Default data directory for the launcher.

    - Windows: %APPDATA%\\mcruntime
    - macOS: ~/Library/Application Support/mcruntime
    - Linux: $XDG_DATA_HOME/mcruntime or ~/.local/share/mcruntime
    """
    home = Path.home()
    name = current_os_name()
    if name == "windows":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) / "mcruntime" if appdata else home / "AppData" / "Roaming" / "mcruntime"
    if name == "osx":
        return home / "Library" / "Application Support" / "mcruntime"
    xdg = os.environ.get("XDG_DATA_HOME")
    return (Path(xdg) if xdg else home / ".local" / "share") / "mcruntime"


def default_global_cache_dir() -> Path:
    """
    Cross-instance content cache shared by every launcher root of the user.

    - Windows: %LOCALAPPDATA%\\mcruntime\\cache\\objects
    - macOS: ~/Library/Caches/mcruntime/objects
    - Linux: $XDG_CACHE_HOME/mcruntime/objects or ~/.cache/mcruntime/objects
    """
    home = Path.home()
    name = current_os_name()
    if name == "windows":
        local = os.environ.get("LOCALAPPDATA")
        base = Path(local) if local else home / "AppData" / "Local"
        return base / "mcruntime" / "cache" / "objects"
    if name == "osx":
        return home / "Library" / "Caches" / "mcruntime" / "objects"
    xdg = os.environ.get("XDG_CACHE_HOME")
    return (Path(xdg) if xdg else home / ".cache") / "mcruntime" / "objects"


@dataclass
class LauncherLayout:
    """
    Shared launcher data layout.

    Attributes
    ----------
    root : pathlib.Path
        Launcher data root.
    versions_dir : pathlib.Path
        ``versions/<id>/<id>.json`` and ``versions/<id>/<id>.jar``.
    libraries_dir : pathlib.Path
        Maven-style library tree.
    assets_dir : pathlib.Path
        ``indexes/``, ``objects/<xx>/<hash>`` and ``virtual/<index>/``.
    runtime_dir : pathlib.Path
        Embedded Java runtimes (``java8``, ``java17``, ``java21`` ...).
    instances_dir : pathlib.Path
        Default parent of instance roots.
    downloads_dir : pathlib.Path
        Installer jars and runtime archives.
    logs_dir : pathlib.Path
        Engine-level logs (installer output ...).
    cache_dir : pathlib.Path
        Per-installation content-addressed cache.
    metadata_cache_dir : pathlib.Path
        TTL cache for manifest / loader metadata responses.
    """

    root: Path
    versions_dir: Path = field(init=False)
    libraries_dir: Path = field(init=False)
    assets_dir: Path = field(init=False)
    runtime_dir: Path = field(init=False)
    instances_dir: Path = field(init=False)
    downloads_dir: Path = field(init=False)
    logs_dir: Path = field(init=False)
    cache_dir: Path = field(init=False)
    metadata_cache_dir: Path = field(init=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()
        self.versions_dir = self.root / "versions"
        self.libraries_dir = self.root / "libraries"
        self.assets_dir = self.root / "assets"
        self.runtime_dir = self.root / "runtime"
        self.instances_dir = self.root / "instances"
        self.downloads_dir = self.root / "downloads"
        self.logs_dir = self.root / "logs"
        self.cache_dir = self.root / ".cache" / "objects"
        self.metadata_cache_dir = self.root / ".cache" / "metadata"

    @property
    def asset_indexes_dir(self) -> Path:
        return self.assets_dir / "indexes"

    @property
    def asset_objects_dir(self) -> Path:
        return self.assets_dir / "objects"

    def asset_object_path(self, digest: str) -> Path:
        return self.asset_objects_dir / digest[:2] / digest

    def version_dir(self, version_id: str) -> Path:
        return self.versions_dir / version_id

    def version_json_path(self, version_id: str) -> Path:
        return self.versions_dir / version_id / f"{version_id}.json"

    def version_jar_path(self, version_id: str) -> Path:
        return self.versions_dir / version_id / f"{version_id}.jar"

    def runtime_home(self, major: int) -> Path:
        return self.runtime_dir / f"java{int(major)}"

    def instance_dir(self, name: str) -> Path:
        return self.instances_dir / _slugify(name)

    def ensure_dirs(self) -> "LauncherLayout":
        for p in (self.versions_dir, self.libraries_dir, self.asset_indexes_dir, self.asset_objects_dir,
                  self.runtime_dir, self.instances_dir, self.downloads_dir, self.logs_dir,
                  self.cache_dir, self.metadata_cache_dir):
            _ensure_dir(p)
        return self


@dataclass
class InstancePaths:
    """
    Container for the artifacts of one instance.

    The game directory is resolved from ``instance.json`` ("game_dir", absolute
    or relative to the instance root); otherwise ``<root>/minecraft`` when it
    exists, then the legacy ``<root>/.minecraft``, then ``<root>/minecraft``.
    """

    instance_root: Path
    game_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        self.instance_root = Path(self.instance_root).expanduser()
        if self.game_dir is None:
            self.game_dir = self._resolve_game_dir()
        else:
            self.game_dir = Path(self.game_dir)

    def _resolve_game_dir(self) -> Path:
        meta = read_json(self.metadata_path, default={}) or {}
        raw = meta.get("game_dir") or meta.get("gameDir") if isinstance(meta, dict) else None
        if raw:
            p = Path(str(raw)).expanduser()
            return p if p.is_absolute() else self.instance_root / p
        modern = self.instance_root / "minecraft"
        legacy = self.instance_root / ".minecraft"
        if not modern.exists() and legacy.exists():
            return legacy
        return modern

    @property
    def metadata_path(self) -> Path:
        return self.instance_root / "instance.json"

    @property
    def runtime_dir(self) -> Path:
        return self.instance_root / ".runtime"

    @property
    def version_json_path(self) -> Path:
        return self.runtime_dir / "version.json"

    @property
    def runtime_state_path(self) -> Path:
        return self.runtime_dir / "runtime_state.json"

    @property
    def natives_dir(self) -> Path:
        return self.runtime_dir / "natives"

    @property
    def launch_plan_path(self) -> Path:
        return self.instance_root / "launch-plan.json"

    @property
    def launch_command_path(self) -> Path:
        return self.instance_root / "launch-command.txt"

    @property
    def logs_dir(self) -> Path:
        return self.instance_root / "logs"

    @property
    def diagnostics_dir(self) -> Path:
        return self.instance_root / "diagnostics"

    @property
    def state_path(self) -> Path:
        return self.instance_root / "state.json"

    @property
    def events_path(self) -> Path:
        return self.instance_root / "events.log"

    @property
    def integrity_path(self) -> Path:
        return self.instance_root / "instance_integrity.json"

    @property
    def quarantine_dir(self) -> Path:
        return self.instance_root / "quarantine"

    @property
    def world_backups_dir(self) -> Path:
        return self.instance_root / "world_backups"

    @property
    def mods_dir(self) -> Path:
        return self.game_dir / "mods"

    @property
    def config_dir(self) -> Path:
        return self.game_dir / "config"

    @property
    def saves_dir(self) -> Path:
        return self.game_dir / "saves"

    @property
    def game_logs_dir(self) -> Path:
        return self.game_dir / "logs"

    @property
    def crash_reports_dir(self) -> Path:
        return self.game_dir / "crash-reports"

    def run_log_paths(self, stamp: str) -> Tuple[Path, Path]:
        """(stdout, stderr) capture files for one launch attempt."""
        return (self.logs_dir / f"run-{stamp}.stdout.log",
                self.logs_dir / f"run-{stamp}.stderr.log")

    def ensure_dirs(self) -> "InstancePaths":
        for p in (self.instance_root, self.game_dir, self.runtime_dir, self.logs_dir, self.mods_dir):
            _ensure_dir(p)
        return self
