"""
mcruntime.validator
-------------------

Pre-flight validation of a launch plan against the files on disk.

- validate_client_jar: size / archive structure / client markers / sha1
- inspect_mod: read the loader metadata a mod jar declares
- check_mods_compatibility: every installed mod targets the instance loader
- validate_launch: pure function producing a ValidationReport

Nothing in this module writes to disk.
"""

from __future__ import annotations

import os
import json
import logging
import tomllib
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import *

from .documents import client_download
from .fileops import read_json
from .java import java_satisfies
from .models import LaunchPlan, LoaderKind, ModInspection, ValidationReport
from .paths import InstancePaths, current_os_name
from .utils import sha1_sum

logger = logging.getLogger(__name__)

DEFAULT_MIN_CLIENT_JAR_BYTES = 512 * 1024

# Entries that only a real game client archive carries (any one is enough).
CLIENT_JAR_MARKERS = (
    "net/minecraft/client/main/Main.class",
    "net/minecraft/client/Minecraft.class",
    "net/minecraft/client/MinecraftApplet.class",
    "version.json",
)

WINDOWS_MAX_PATH = 260
WINDOWS_MAX_COMMAND_LINE = 32767

# Every group must be matched by at least one classpath entry (lowercase,
# forward slashes).
LOADER_RUNTIME_MARKERS: Dict[LoaderKind, Tuple[Tuple[str, Tuple[str, ...]], ...]] = {
    LoaderKind.FORGE: (
        ("bootstrap", ("bootstraplauncher", "modlauncher", "launchwrapper")),
        ("loader", ("fmlloader", "fmlcore", "minecraftforge/forge")),
    ),
    LoaderKind.NEOFORGE: (
        ("bootstrap", ("bootstraplauncher",)),
        ("loader", ("neoforge", "fancymodloader")),
    ),
    LoaderKind.FABRIC: (
        ("loader", ("fabric-loader",)),
    ),
    LoaderKind.QUILT: (
        ("loader", ("quilt-loader",)),
    ),
}

# Which declared mod platforms a loader runs.
_LOADER_ACCEPTS: Dict[LoaderKind, FrozenSet[str]] = {
    LoaderKind.FABRIC: frozenset({"fabric"}),
    LoaderKind.QUILT: frozenset({"quilt", "fabric"}),
    LoaderKind.FORGE: frozenset({"forge"}),
    LoaderKind.NEOFORGE: frozenset({"neoforge", "forge"}),
}


@dataclass
class JarValidation:
    """Result of validate_client_jar()."""
    ok: bool
    reason: Optional[str] = None
    size: Optional[int] = None
    sha1: Optional[str] = None
    is_zip: bool = False
    has_client_markers: bool = False


def validate_client_jar(path: Union[str, Path],
                        expected_sha1: Optional[str] = None,
                        min_bytes: int = DEFAULT_MIN_CLIENT_JAR_BYTES) -> JarValidation:
    """
    Check that `path` is a real game client archive.

    Parameters
    ----------
    path : str | Path
        Candidate client jar.
    expected_sha1 : Optional[str]
        Declared hash (``downloads.client.sha1``); skipped when unknown.
    min_bytes : int
        Anything smaller is a truncated download or an error page.

    Returns
    -------
    JarValidation
        ``reason`` names the first failing property. Size, hash and structure
        are filled in as far as they could be computed, for diagnostics.
    """
    path = Path(path)
    if not path.is_file():
        return JarValidation(ok=False, reason="missing")
    size = path.stat().st_size
    sha1 = sha1_sum(path) if size else None
    result = JarValidation(ok=False, size=size, sha1=sha1)
    try:
        with zipfile.ZipFile(path, "r") as zf:
            names = set(zf.namelist())
        result.is_zip = bool(names)
        result.has_client_markers = any(m in names for m in CLIENT_JAR_MARKERS)
    except (zipfile.BadZipFile, OSError, ValueError):
        result.is_zip = False

    if size == 0:
        result.reason = "empty file"
    elif size < min_bytes:
        result.reason = f"too small ({size} bytes < {min_bytes})"
    elif not result.is_zip:
        result.reason = "not a zip archive"
    elif not result.has_client_markers:
        result.reason = "no client class markers"
    elif expected_sha1 and sha1 != expected_sha1.lower():
        result.reason = f"sha1 mismatch (expected {expected_sha1.lower()}, got {sha1})"
    else:
        result.ok = True
    return result


# Mods
def _fabric_dependencies(raw: Any) -> Dict[str, str]:
    deps: Dict[str, str] = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            deps[str(key)] = " || ".join(map(str, value)) if isinstance(value, list) else str(value)
    return deps


def _quilt_dependencies(raw: Any) -> Dict[str, str]:
    deps: Dict[str, str] = {}
    for entry in raw or []:
        if isinstance(entry, str):
            deps[entry] = "*"
        elif isinstance(entry, dict) and entry.get("id"):
            versions = entry.get("versions", "*")
            deps[str(entry["id"])] = " || ".join(map(str, versions)) if isinstance(versions, list) else str(versions)
    return deps


def _toml_dependencies(doc: Dict[str, Any], mod_id: Optional[str]) -> Dict[str, str]:
    deps: Dict[str, str] = {}
    tables = doc.get("dependencies")
    if not isinstance(tables, dict):
        return deps
    entries = tables.get(mod_id) if mod_id and isinstance(tables.get(mod_id), list) else None
    if entries is None:
        entries = [e for v in tables.values() if isinstance(v, list) for e in v]
    for entry in entries:
        if isinstance(entry, dict) and entry.get("modId"):
            deps[str(entry["modId"])] = str(entry.get("versionRange", "*"))
    return deps


def inspect_mod(path: Union[str, Path]) -> ModInspection:
    """
    Read the metadata a mod archive declares.

    Recognized files: ``fabric.mod.json``, ``quilt.mod.json``,
    ``META-INF/neoforge.mods.toml``, ``META-INF/mods.toml`` and the legacy
    ``mcmod.info``. A jar may declare several platforms. Unreadable metadata
    files are ignored (the jar then simply declares fewer platforms).
    """
    path = Path(path)
    result = ModInspection(path=path)
    try:
        zf = zipfile.ZipFile(path, "r")
    except (zipfile.BadZipFile, OSError, ValueError):
        result.valid_archive = False
        return result

    loaders: List[str] = []
    with zf:
        names = set(zf.namelist())

        def _read(name: str) -> Optional[str]:
            if name not in names:
                return None
            try:
                return zf.read(name).decode("utf-8", errors="replace")
            except (zipfile.BadZipFile, OSError, KeyError) as exc:
                logger.debug("Cannot read %s from %s: %s", name, path.name, exc)
                return None

        text = _read("fabric.mod.json")
        if text is not None:
            try:
                data = json.loads(text, strict=False)
            except json.JSONDecodeError as exc:
                logger.debug("Invalid fabric.mod.json in %s: %s", path.name, exc)
            else:
                if isinstance(data, dict):
                    loaders.append("fabric")
                    result.mod_id = result.mod_id or data.get("id")
                    result.dependencies.update(_fabric_dependencies(data.get("depends")))

        text = _read("quilt.mod.json")
        if text is not None:
            try:
                data = json.loads(text, strict=False)
            except json.JSONDecodeError as exc:
                logger.debug("Invalid quilt.mod.json in %s: %s", path.name, exc)
            else:
                ql = data.get("quilt_loader") if isinstance(data, dict) else None
                if isinstance(ql, dict):
                    loaders.append("quilt")
                    result.mod_id = result.mod_id or ql.get("id")
                    result.dependencies.update(_quilt_dependencies(ql.get("depends")))

        for name, platform in (("META-INF/neoforge.mods.toml", "neoforge"), ("META-INF/mods.toml", "forge")):
            text = _read(name)
            if text is None:
                continue
            try:
                doc = tomllib.loads(text)
            except tomllib.TOMLDecodeError as exc:
                logger.debug("Invalid %s in %s: %s", name, path.name, exc)
                continue
            mods = doc.get("mods") if isinstance(doc.get("mods"), list) else []
            mod_id = mods[0].get("modId") if mods and isinstance(mods[0], dict) else None
            loaders.append(platform)
            result.mod_id = result.mod_id or mod_id
            result.dependencies.update(_toml_dependencies(doc, mod_id))

        text = _read("mcmod.info")
        if text is not None and not loaders:
            try:
                data = json.loads(text, strict=False)
            except json.JSONDecodeError as exc:
                logger.debug("Invalid mcmod.info in %s: %s", path.name, exc)
            else:
                entries = data.get("modList") if isinstance(data, dict) else data
                if isinstance(entries, list) and entries and isinstance(entries[0], dict):
                    loaders.append("forge")
                    result.mod_id = entries[0].get("modid")
                    result.minecraft = entries[0].get("mcversion")

    result.loaders = tuple(dict.fromkeys(loaders))
    result.minecraft = result.minecraft or result.dependencies.get("minecraft")
    return result


def list_mod_files(mods_dir: Path) -> List[Path]:
    """``*.jar`` files directly inside `mods_dir`, sorted by name."""
    mods_dir = Path(mods_dir)
    if not mods_dir.is_dir():
        return []
    return sorted((p for p in mods_dir.iterdir() if p.is_file() and p.suffix.lower() == ".jar"),
                  key=lambda p: p.name.lower())


def check_mods_compatibility(mods_dir: Path, loader: LoaderKind) -> Tuple[bool, List[str], List[str]]:
    """
    Returns
    -------
    (ok, problems, warnings)
        ``problems`` names mods that cannot load on `loader` (corrupt
        archives included); ``warnings`` lists mods without recognizable
        metadata and, for vanilla, the fact that mods are ignored.
    """
    mods = list_mod_files(mods_dir)
    problems: List[str] = []
    warnings: List[str] = []
    if loader is LoaderKind.VANILLA:
        if mods:
            warnings.append(f"{len(mods)} mod(s) present but vanilla ignores them")
        return True, problems, warnings
    accepted = _LOADER_ACCEPTS[loader]
    for mod in mods:
        info = inspect_mod(mod)
        if not info.valid_archive:
            problems.append(f"{mod.name}: corrupt archive")
        elif not info.has_metadata:
            warnings.append(f"{mod.name}: no loader metadata")
        elif not accepted.intersection(info.loaders):
            problems.append(f"{mod.name}: built for {'/'.join(info.loaders)}, not {loader.value}")
    return not problems, problems, warnings


# Launch validation
def _norm(entry: Union[str, Path]) -> str:
    return os.path.normcase(os.path.realpath(str(entry)))


def loader_runtime_missing(loader: LoaderKind, classpath: Iterable[str]) -> List[str]:
    """Names of the marker groups of `loader` no classpath entry satisfies."""
    groups = LOADER_RUNTIME_MARKERS.get(loader)
    if not groups:
        return []
    entries = [str(e).replace("\\", "/").lower() for e in classpath]
    return [name for name, markers in groups
            if not any(marker in entry for entry in entries for marker in markers)]


def _declared_client_sha1(version_json: Path) -> Optional[str]:
    doc = read_json(version_json)
    if not isinstance(doc, dict):
        return None
    return client_download(doc).get("sha1")


def validate_launch(paths: InstancePaths,
                    plan: LaunchPlan,
                    *,
                    min_jar_bytes: int = DEFAULT_MIN_CLIENT_JAR_BYTES,
                    os_name: Optional[str] = None) -> ValidationReport:
    """
    Run every pre-flight check for `plan`.

    Required checks (any failure makes ``ok`` false and lists the check in
    ``errors``): metadata_present, version_json_present, client_jar_present,
    client_jar_min_size, client_jar_archive_valid, client_jar_hash_matches,
    main_class_valid, classpath_non_empty, classpath_entries_exist,
    classpath_has_client_jar, loader_runtime_present, placeholders_resolved,
    java_version_compatible, mods_loader_compatible.

    Advisory checks (warnings only): env_present, logs_dir_exists,
    windows_path_length, classpath_length, legacy_java_runtime.
    """
    report = ValidationReport()
    os_name = os_name or current_os_name()

    report.record("metadata_present", paths.metadata_path.is_file(), str(paths.metadata_path))

    version_json = Path(plan.version_json) if plan.version_json else None
    vj_ok = bool(version_json and version_json.is_file() and version_json.stat().st_size > 0)
    report.record("version_json_present", vj_ok, None if vj_ok else f"missing {plan.version_json or '(unset)'}")

    jar = Path(plan.client_jar) if plan.client_jar else None
    expected_sha1 = _declared_client_sha1(version_json) if vj_ok else None
    jv = validate_client_jar(jar, expected_sha1, min_jar_bytes) if jar else JarValidation(ok=False, reason="missing")
    present = bool(jv.size)
    report.record("client_jar_present", present, None if present else f"missing {plan.client_jar or '(unset)'}")
    report.record("client_jar_min_size", present and jv.size >= min_jar_bytes,
                  None if present and jv.size >= min_jar_bytes else f"{jv.size or 0} bytes < {min_jar_bytes}")
    report.record("client_jar_archive_valid", jv.is_zip and jv.has_client_markers,
                  None if jv.is_zip and jv.has_client_markers else
                  ("not a zip archive" if not jv.is_zip else "no client class markers"))
    if expected_sha1:
        matches = jv.sha1 == expected_sha1.lower()
        report.record("client_jar_hash_matches", matches,
                      None if matches else f"expected {expected_sha1.lower()}, got {jv.sha1}")
    else:
        report.record("client_jar_hash_matches", present, "no declared hash" if present else "missing jar")

    main_ok = plan.main_class in plan.loader.accepted_main_classes
    report.record("main_class_valid", main_ok,
                  None if main_ok else f"{plan.main_class} is not an entrypoint of {plan.loader.value}")

    entries = list(plan.classpath_entries)
    report.record("classpath_non_empty", bool(entries))
    missing = [e for e in entries if not (os.path.isfile(e) and os.path.getsize(e) > 0)]
    report.record("classpath_entries_exist", bool(entries) and not missing,
                  f"{len(missing)} missing, first: {missing[0]}" if missing else None)
    has_jar = bool(jar) and _norm(jar) in {_norm(e) for e in entries}
    report.record("classpath_has_client_jar", has_jar, None if has_jar else "client jar not on classpath")

    absent = loader_runtime_missing(plan.loader, entries)
    report.record("loader_runtime_present", not absent,
                  f"no {plan.loader.value} {'/'.join(absent)} artifact on classpath" if absent else None)

    unresolved = [a for a in (*plan.java_args, plan.main_class, *plan.game_args) if "${" in a]
    report.record("placeholders_resolved", not unresolved,
                  f"unresolved: {unresolved[0]}" if unresolved else None)

    java_ok = java_satisfies(plan.resolved_java_major, plan.required_java_major) and Path(plan.java_path).is_file()
    report.record("java_version_compatible", java_ok,
                  None if java_ok else f"java {plan.resolved_java_major} at {plan.java_path}, "
                                       f"required {plan.required_java_major}")

    mods_ok, problems, mod_warnings = check_mods_compatibility(paths.mods_dir, plan.loader)
    report.record("mods_loader_compatible", mods_ok, "; ".join(problems[:5]) if problems else None)
    report.warnings.extend(mod_warnings)

    # advisory
    report.record("env_present", bool(plan.env.get("JAVA_HOME")), "JAVA_HOME not set in plan env",
                  required=False)
    report.record("logs_dir_exists", paths.logs_dir.is_dir(), f"{paths.logs_dir} does not exist", required=False)
    if os_name == "windows":
        long_paths = [e for e in entries if len(e) >= WINDOWS_MAX_PATH]
        report.record("windows_path_length", not long_paths,
                      f"{len(long_paths)} classpath entries exceed {WINDOWS_MAX_PATH} chars", required=False)
    else:
        report.record("windows_path_length", True, required=False)
    cp_len = len(plan.classpath_separator.join(entries))
    report.record("classpath_length", cp_len < WINDOWS_MAX_COMMAND_LINE,
                  f"classpath is {cp_len} chars", required=False)
    # LaunchWrapper era loaders may break on the module system
    legacy_ok = plan.required_java_major > 8 or plan.resolved_java_major <= 8
    report.record("legacy_java_runtime", legacy_ok,
                  f"java {plan.resolved_java_major} for a java {plan.required_java_major} version", required=False)

    if not report.ok:
        logger.info("Pre-flight failed: %s", report.summary())
    return report
