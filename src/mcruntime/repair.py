"""
mcruntime.repair
----------------

On-demand structured repair of one instance.

Each probe inspects one category (version files, libraries, assets, loader,
mods, config, worlds) and returns what it found and what it fixed. With
``apply=False`` a probe only reports. Repairs are deletions or restorations:
corrupt downloads are removed so the next bootstrap fetches them again,
corrupt mods are quarantined, broken configs are backed up and reset, and
damaged worlds are zipped to ``world_backups/`` before ``level.dat`` is
restored from ``level.dat_old``.
"""

from __future__ import annotations

import os
import json
import shutil
import logging
import tomllib
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import *

from .documents import profile_evidence_ok
from .exceptions import RepairFailure
from .fileops import is_same_file, is_zip_archive, prune_oldest, read_json, safe_remove, write_json_atomic
from .launch_plan import clear_persisted
from .maven import library_allowed, library_artifact
from .models import InstanceRecord, LoaderKind, RepairMode, RepairReport, RepairSummary
from .paths import InstancePaths, LauncherLayout
from .utils import stable_json_hash, utc_now_iso, utc_stamp
from .validator import inspect_mod, list_mod_files

logger = logging.getLogger(__name__)

KEEP_LOG_FILES = 20


@dataclass
class ProbeResult:
    fixed: int = 0
    issues: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.issues


def _remove(path: Path, op: str) -> None:
    try:
        safe_remove(path)
    except OSError as exc:
        raise RepairFailure(f"Could not remove {path}: {exc}", context={"op": op, "path": str(path)},
                            hint="Close Minecraft/Java processes that may hold the file and retry.") from exc


def _walk_files(root: Path, suffix: str) -> Iterator[Path]:
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            if name.endswith(suffix):
                yield Path(dirpath) / name


def integrity_state(record: InstanceRecord, mods_dir: Path) -> Dict[str, Any]:
    """State snapshot whose hash changes when version, loader or the mod list change."""
    data = {
        "instanceId": record.id,
        "version": record.version,
        "loader": record.loader.value,
        "mods": sorted(p.name for p in list_mod_files(mods_dir)),
    }
    data["stateHash"] = stable_json_hash(data)
    return data


class RepairManager:
    """
    Parameters
    ----------
    layout : LauncherLayout
        Shared launcher directories.
    paths : InstancePaths
        Files of the instance being repaired.
    record : InstanceRecord
        Instance description (version, loader).
    reinstall_loader : Optional[Callable[[], Any]]
        Re-runs loader installation; called by the loader probe when it
        repairs. Without it a broken loader is only reported.
    """

    def __init__(self,
                 layout: LauncherLayout,
                 paths: InstancePaths,
                 record: InstanceRecord,
                 *,
                 reinstall_loader: Optional[Callable[[], Any]] = None):
        self.layout = layout
        self.paths = paths
        self.record = record
        self.reinstall_loader = reinstall_loader

    # probes
    def probe_version(self, apply: bool) -> ProbeResult:
        """Vanilla version document and client jar present and readable."""
        result = ProbeResult()
        version = self.record.version
        doc_path = self.layout.version_json_path(version)
        jar_path = self.layout.version_jar_path(version)
        doc = read_json(doc_path)
        broken: List[Path] = []
        if not isinstance(doc, dict):
            result.issues.append(f"version document {version}.json missing or unreadable")
            broken.append(doc_path)
        if not jar_path.is_file():
            result.issues.append(f"client jar {version}.jar missing")
        elif not is_zip_archive(jar_path):
            result.issues.append(f"client jar {version}.jar is corrupt")
            broken.append(jar_path)
        elif isinstance(doc, dict):
            expected = ((doc.get("downloads") or {}).get("client") or {}).get("sha1")
            if expected and not is_same_file(jar_path, {"sha1": expected})[0]:
                result.issues.append(f"client jar {version}.jar hash mismatch")
                broken.append(jar_path)
        if apply:
            for p in broken:
                if p.exists():
                    _remove(p, "repair_version")
                    result.fixed = 1
        return result

    def probe_libraries(self, apply: bool) -> Tuple[ProbeResult, ProbeResult]:
        """
        Returns (libraries, dependencies): empty or corrupt jars found by
        walking ``libraries/``, and libraries of the instance's merged
        document whose file no longer matches its declared hash.
        """
        libs = ProbeResult()
        deps = ProbeResult()
        root = self.layout.libraries_dir
        if not root.is_dir():
            libs.issues.append("libraries directory missing")
            if apply:
                root.mkdir(parents=True, exist_ok=True)
                libs.fixed += 1
            return libs, deps
        for jar in _walk_files(root, ".jar"):
            try:
                empty = jar.stat().st_size == 0
            except PermissionError:
                libs.issues.append(f"library not readable: {jar.relative_to(root)}")
                continue
            if empty or not is_zip_archive(jar):
                libs.issues.append(f"corrupt library: {jar.relative_to(root)}")
                if apply:
                    _remove(jar, "repair_libraries")
                    libs.fixed += 1

        document = read_json(self.paths.version_json_path)
        declared = document.get("libraries") or [] if isinstance(document, dict) else []
        for lib in declared:
            if not isinstance(lib, dict) or not library_allowed(lib):
                continue
            artifact = library_artifact(lib, root)
            if artifact is None or not artifact.sha1 or not artifact.path.is_file():
                continue
            if not is_same_file(artifact.path, {"sha1": artifact.sha1})[0]:
                deps.issues.append(f"library hash mismatch: {artifact.name}")
                if apply:
                    _remove(artifact.path, "repair_libraries")
                    deps.fixed += 1
        return libs, deps

    def probe_assets(self, apply: bool) -> ProbeResult:
        """Asset index readable, no empty objects."""
        result = ProbeResult()
        indexes = self.layout.asset_indexes_dir
        if not indexes.is_dir():
            result.issues.append("assets/indexes missing")
            if apply:
                indexes.mkdir(parents=True, exist_ok=True)
                result.fixed += 1
            return result
        for index in indexes.glob("*.json"):
            try:
                with open(index, "r", encoding="utf-8") as f:
                    json.load(f)
            except (OSError, json.JSONDecodeError):
                result.issues.append(f"asset index {index.name} unreadable")
                if apply:
                    _remove(index, "repair_assets")
                    result.fixed += 1
        objects = self.layout.asset_objects_dir
        if objects.is_dir():
            for obj in objects.glob("*/*"):
                if obj.is_file() and obj.stat().st_size == 0:
                    result.issues.append(f"empty asset object {obj.name}")
                    if apply:
                        _remove(obj, "repair_assets")
                        result.fixed += 1
        return result

    def _installed_loader_ok(self) -> bool:
        loader = self.record.loader
        versions = self.layout.versions_dir
        if not versions.is_dir():
            return False
        keyword = "neoforge" if loader is LoaderKind.NEOFORGE else loader.value
        for entry in versions.iterdir():
            if not entry.is_dir() or keyword not in entry.name.lower():
                continue
            doc = read_json(self.layout.version_json_path(entry.name))
            if isinstance(doc, dict) and doc.get("inheritsFrom") == self.record.version \
                    and profile_evidence_ok(doc, loader, self.record.loader_version):
                return True
        return False

    def probe_loader(self, apply: bool, *, force: bool = False) -> ProbeResult:
        result = ProbeResult()
        if self.record.loader is LoaderKind.VANILLA:
            return result
        healthy = self._installed_loader_ok()
        if healthy and not force:
            return result
        result.issues.append(f"{self.record.loader.value} loader profile "
                             + ("reinstall requested" if healthy else "missing or incomplete"))
        if apply:
            if self.reinstall_loader is None:
                result.issues.append("loader reinstall unavailable")
            else:
                self.reinstall_loader()
                result.fixed = 1
        return result

    def probe_mods(self, apply: bool) -> ProbeResult:
        """Corrupt mod archives are moved to the instance quarantine."""
        result = ProbeResult()
        for path in list_mod_files(self.paths.mods_dir):
            info = inspect_mod(path)
            if not info.valid_archive:
                result.issues.append(f"corrupt mod (invalid zip): {path.name}")
                if apply:
                    self._quarantine(path)
                    result.fixed += 1
            elif not info.has_metadata:
                result.issues.append(f"mod without loader metadata: {path.name}")
        return result

    def _quarantine(self, path: Path) -> Path:
        target = self.paths.quarantine_dir / f"{utc_stamp()}-{path.name}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(path), str(target))
        except OSError as exc:
            raise RepairFailure(f"Could not quarantine {path.name}: {exc}",
                                context={"op": "quarantine", "path": str(path)}) from exc
        logger.warning("Quarantined %s", path.name)
        return target

    def probe_config(self, apply: bool) -> ProbeResult:
        """
        Unparseable JSON configs are backed up and reset to ``{}``;
        unparseable TOML configs are backed up and removed (loaders
        regenerate them).
        """
        result = ProbeResult()
        config = self.paths.config_dir
        if not config.is_dir():
            return result
        for path in sorted(config.rglob("*")):
            if path.suffix not in (".json", ".toml") or not path.is_file():
                continue
            try:
                if path.suffix == ".json":
                    with open(path, "r", encoding="utf-8") as f:
                        json.load(f)
                else:
                    with open(path, "rb") as f:
                        tomllib.load(f)
            except (UnicodeDecodeError, json.JSONDecodeError, tomllib.TOMLDecodeError):
                result.issues.append(f"corrupt config: {path.relative_to(config)}")
                if apply:
                    self._reset_config(path)
                    result.fixed += 1
        return result

    @staticmethod
    def _reset_config(path: Path) -> None:
        backup = path.with_name(path.name + ".bak")
        try:
            shutil.copy2(path, backup)
            if path.suffix == ".json":
                write_json_atomic(path, {})
            else:
                path.unlink()
        except OSError as exc:
            raise RepairFailure(f"Could not reset {path.name}: {exc}",
                                context={"op": "reset_config", "path": str(path)}) from exc
        logger.warning("Reset corrupt config %s (backup %s)", path.name, backup.name)

    def probe_worlds(self, apply: bool) -> ProbeResult:
        """Worlds with a missing or empty level.dat are backed up, then restored from level.dat_old."""
        result = ProbeResult()
        saves = self.paths.saves_dir
        if not saves.is_dir():
            return result
        for world in sorted(p for p in saves.iterdir() if p.is_dir()):
            level = world / "level.dat"
            if level.is_file() and level.stat().st_size > 0:
                continue
            result.issues.append(f"world {world.name}: level.dat missing or empty")
            if not apply:
                continue
            self.backup_world(world)
            result.fixed += 1
            old = world / "level.dat_old"
            if old.is_file() and old.stat().st_size > 0:
                try:
                    shutil.copy2(old, level)
                except OSError as exc:
                    raise RepairFailure(f"Could not restore {world.name}/level.dat: {exc}",
                                        context={"op": "restore_level", "path": str(level)}) from exc
                logger.warning("Restored %s/level.dat from level.dat_old", world.name)
            else:
                result.issues.append(f"world {world.name}: no level.dat_old to restore from")
        return result

    def backup_world(self, world: Path) -> Path:
        """Zip `world` into ``world_backups/<name>_<stamp>.zip``."""
        target = self.paths.world_backups_dir / f"{world.name}_{utc_stamp()}.zip"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for dirpath, _, filenames in os.walk(world):
                    for name in filenames:
                        full = Path(dirpath) / name
                        zf.write(full, full.relative_to(world.parent).as_posix())
        except OSError as exc:
            raise RepairFailure(f"Could not back up world {world.name}: {exc}",
                                context={"op": "backup_world", "path": str(world)}) from exc
        logger.info("World %s backed up to %s", world.name, target.name)
        return target

    # mode steps
    def wipe_runtime(self, report: RepairReport) -> None:
        """Full mode: drop shared libraries, assets, Java runtimes and the instance natives."""
        for path in (self.layout.libraries_dir, self.paths.natives_dir, self.layout.runtime_dir,
                     self.layout.assets_dir):
            if path.exists():
                _remove(path, "wipe_runtime")
                report.add_issue(f"cleared {path.name} for a full reinstall")

    def clear_cached_metadata(self, report: RepairReport) -> bool:
        """
        Verify-integrity mode: drop the vanilla document, loader profiles of
        this game version, the persisted plan and the integrity snapshot.
        """
        version = self.record.version
        removed = clear_persisted(self.paths)
        for p in removed:
            report.add_issue(f"cleared cached {p.name}")
        candidates = [self.layout.version_json_path(version), self.paths.integrity_path]
        if self.layout.versions_dir.is_dir():
            candidates += [self.layout.version_json_path(d.name) for d in self.layout.versions_dir.iterdir()
                           if d.is_dir() and d.name != version and version in d.name]
        for p in candidates:
            if p.is_file():
                _remove(p, "clear_metadata")
                report.add_issue(f"cleared cached {p.name}")
                removed.append(p)
        if not removed:
            report.add_issue("no cached metadata to clear")
        return bool(removed)

    def optimize(self) -> int:
        removed = 0
        for folder in (self.paths.game_logs_dir, self.paths.crash_reports_dir, self.paths.logs_dir):
            try:
                removed += prune_oldest(folder, KEEP_LOG_FILES)
            except OSError as exc:
                raise RepairFailure(f"Could not prune {folder}: {exc}",
                                    context={"op": "optimize", "path": str(folder)}) from exc
        logger.info("Pruned %d old log files", removed)
        return removed

    def check_integrity_snapshot(self, report: RepairReport, *, write: bool) -> Dict[str, Any]:
        current = integrity_state(self.record, self.paths.mods_dir)
        previous = read_json(self.paths.integrity_path)
        if isinstance(previous, dict) and previous.get("stateHash") != current["stateHash"]:
            report.add_issue("instance state changed since the last check (version, loader or mods)")
        if write and (not isinstance(previous, dict) or previous.get("stateHash") != current["stateHash"]):
            write_json_atomic(self.paths.integrity_path, {**current, "checkedAt": utc_now_iso()})
        return current

    def _apply(self, report: RepairReport, probe: str, result: ProbeResult) -> None:
        for issue in result.issues:
            report.add_issue(issue)
        if probe == "version":
            report.version_fixed = report.version_fixed or result.fixed > 0
        elif probe == "libraries":
            report.libraries_fixed += result.fixed
        elif probe == "dependencies":
            report.dependencies_fixed += result.fixed
        elif probe == "assets":
            report.assets_fixed += result.fixed
        elif probe == "loader":
            report.loader_reinstalled = report.loader_reinstalled or result.fixed > 0
        elif probe == "mods":
            report.mods_fixed += result.fixed
        elif probe == "config":
            report.config_regenerated = report.config_regenerated or result.fixed > 0
        elif probe == "worlds":
            report.world_backed_up = report.world_backed_up or result.fixed > 0

    def _run_all(self, report: RepairReport, apply: bool, *, force_loader: bool = False) -> None:
        self._apply(report, "version", self.probe_version(apply))
        libs, deps = self.probe_libraries(apply)
        self._apply(report, "libraries", libs)
        self._apply(report, "dependencies", deps)
        self._apply(report, "assets", self.probe_assets(apply))
        self._apply(report, "loader", self.probe_loader(apply, force=force_loader))
        self._apply(report, "mods", self.probe_mods(apply))
        self._apply(report, "config", self.probe_config(apply))
        self._apply(report, "worlds", self.probe_worlds(apply))

    def _run_smart(self, report: RepairReport) -> None:
        """Pre-check everything read-only, then repair only the categories with findings."""
        version = self.probe_version(False)
        libs, deps = self.probe_libraries(False)
        assets = self.probe_assets(False)
        loader = self.probe_loader(False)
        mods = self.probe_mods(False)
        if not (version.clean and libs.clean and deps.clean and assets.clean):
            self._apply(report, "version", self.probe_version(True))
            libs, deps = self.probe_libraries(True)
            self._apply(report, "libraries", libs)
            self._apply(report, "dependencies", deps)
            self._apply(report, "assets", self.probe_assets(True))
        if not loader.clean:
            self._apply(report, "loader", self.probe_loader(True))
        if not mods.clean:
            self._apply(report, "mods", self.probe_mods(True))
        self._apply(report, "config", self.probe_config(True))
        self._apply(report, "worlds", self.probe_worlds(True))
        for finding in (version, libs, deps, assets, loader, mods):
            for issue in finding.issues:
                report.add_issue(issue)

    def run(self, mode: Union[RepairMode, str]) -> RepairSummary:
        """
        Repair the instance in `mode`.

        Raises
        ------
        RepairFailure
            A filesystem operation failed part way.
        LoaderInstallFailure
            The loader reinstall callback failed.
        """
        mode = RepairMode.parse(mode)
        report = RepairReport(checked_only=not mode.mutates)
        logger.info("Repairing %s (%s)", self.record.id, mode.value)

        if mode is RepairMode.FULL:
            self.wipe_runtime(report)
        if mode is RepairMode.VERIFY_INTEGRITY:
            report.version_fixed = self.clear_cached_metadata(report)
        elif mode is RepairMode.SMART:
            self._run_smart(report)
        elif mode is RepairMode.MODS_ONLY:
            self._apply(report, "mods", self.probe_mods(True))
        elif mode is RepairMode.REINSTALL_LOADER:
            self._apply(report, "loader", self.probe_loader(True, force=True))
        else:
            force_loader = mode in (RepairMode.FULL, RepairMode.REPAIR_AND_OPTIMIZE)
            self._run_all(report, mode.mutates, force_loader=force_loader)

        if mode is not RepairMode.VERIFY_INTEGRITY:
            self.check_integrity_snapshot(report, write=mode.mutates)
        if mode is RepairMode.REPAIR_AND_OPTIMIZE:
            self.optimize()
            report.optimized = True
        return RepairSummary(mode, report, repair_message(report), self.record.id)


def has_repairs(report: RepairReport) -> bool:
    return bool(report.libraries_fixed or report.assets_fixed or report.mods_fixed or report.dependencies_fixed
                or report.loader_reinstalled or report.config_regenerated or report.world_backed_up
                or report.version_fixed)


def repair_message(report: RepairReport) -> str:
    if not report.issues_detected and not has_repairs(report):
        return "No problems found."
    if report.checked_only:
        return f"Verification found {len(report.issues_detected)} issue(s); nothing was changed."
    lines = ["Repair completed",
             f"{report.libraries_fixed + report.dependencies_fixed} libraries restored",
             f"{report.assets_fixed} assets restored",
             f"{report.mods_fixed} mods repaired"]
    if report.version_fixed:
        lines.append("version files refreshed")
    if report.loader_reinstalled:
        lines.append("loader reinstalled")
    if report.config_regenerated:
        lines.append("config regenerated")
    if report.world_backed_up:
        lines.append("world backup created")
    if report.optimized:
        lines.append("logs pruned")
    return "\n".join(lines)
