"""
mcruntime.launch_plan
---------------------

Turns a merged version document into a LaunchPlan and persists it.

Responsibilities
- Expand ``${token}`` placeholders from a fixed variable table. Arguments
  still holding a placeholder afterwards are dropped (with the flag that
  introduced them), ``--demo`` is always dropped.
- Evaluate conditional arguments with every feature switched off.
- Legacy documents: split ``minecraftArguments`` and use a default JVM template.
- Assemble the classpath in declaration order (a redeclared artifact keeps
  its last version), de-duplicated by canonical path, with the validated
  client jar last.
- Extract legacy natives into the instance natives directory.
- Persist ``.runtime/version.json``, ``.runtime/runtime_state.json``,
  ``launch-plan.json`` and ``launch-command.txt``; reload them while the
  stored document still matches its snapshot hash.
"""

from __future__ import annotations

import os
import re
import shlex
import logging
import zipfile
from pathlib import Path, PurePosixPath
from typing import *

from .config import EngineConfig
from .documents import client_download, document_hash, jar_version_id
from .exceptions import FileOperationError, IntegrityFailure
from .fileops import atomic_write, read_json, safe_remove, write_json_atomic
from .maven import library_allowed, library_artifact, library_identity, library_native, rules_allow
from .models import (InstanceRecord, JavaRuntime, LaunchAuth, LaunchPlan, LoaderKind,
                     RuntimeVersionSnapshot)
from .paths import InstancePaths, LauncherLayout, current_os_name
from .utils import stable_json_hash, utc_now_iso
from .validator import validate_client_jar

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")

# Used when a document only has ``minecraftArguments`` (1.12.2 and older).
LEGACY_JVM_ARGS = (
    "-Djava.library.path=${natives_directory}",
    "-Dminecraft.launcher.brand=${launcher_name}",
    "-Dminecraft.launcher.version=${launcher_version}",
    "-cp",
    "${classpath}",
)

_LEGACY_OS_JVM_ARGS = {
    "osx": ("-XstartOnFirstThread",),
    "windows": ("-XX:HeapDumpPath=MojangTricksIntelDriversForPerformance_javaw.exe_minecraft.exe.heapdump",),
}

_SECRET_FLAGS = ("--accessToken", "--session")
MASK = "***"


def classpath_separator(os_name: Optional[str] = None) -> str:
    return ";" if (os_name or current_os_name()) == "windows" else ":"


def expand_placeholders(value: str, variables: Mapping[str, str]) -> Tuple[str, bool]:
    """
    Substitute every known ``${name}``.

    Returns
    -------
    (text, resolved)
        `resolved` is False when an unknown placeholder is left in `text`.
    """
    resolved = True

    def _sub(match: "re.Match[str]") -> str:
        nonlocal resolved
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        resolved = False
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, value), resolved


def flatten_arguments(entries: Iterable[Any], os_name: Optional[str] = None,
                      features: Optional[Mapping[str, bool]] = None) -> List[str]:
    """
    Flatten ``arguments.game`` / ``arguments.jvm``: plain strings pass,
    ``{"rules": ..., "value": str | [str]}`` entries pass when their rules
    allow them on this OS with `features`.
    """
    out: List[str] = []
    for entry in entries or []:
        if isinstance(entry, str):
            out.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        if not rules_allow(entry.get("rules"), os_name, features=features or {}):
            continue
        value = entry.get("value")
        if isinstance(value, str):
            out.append(value)
        elif isinstance(value, list):
            out.extend(str(v) for v in value)
    return out


def resolve_game_arguments(raw: Sequence[str], variables: Mapping[str, str]) -> List[str]:
    """
    Expand game arguments. ``--flag value`` pairs are kept or dropped
    together; ``--demo`` never survives.
    """
    out: List[str] = []
    i = 0
    while i < len(raw):
        token = raw[i]
        if token == "--demo":
            i += 1
            continue
        nxt = raw[i + 1] if i + 1 < len(raw) else None
        if token.startswith("--") and nxt is not None and not nxt.startswith("--"):
            flag, flag_ok = expand_placeholders(token, variables)
            value, value_ok = expand_placeholders(nxt, variables)
            if flag_ok and value_ok:
                out += [flag, value]
            else:
                logger.debug("Dropping unresolved game argument %s %s", token, nxt)
            i += 2
            continue
        text, ok = expand_placeholders(token, variables)
        if ok:
            out.append(text)
        else:
            logger.debug("Dropping unresolved game argument %s", token)
        i += 1
    return out


def resolve_jvm_arguments(raw: Sequence[str], variables: Mapping[str, str]) -> List[str]:
    out: List[str] = []
    for token in raw:
        text, ok = expand_placeholders(token, variables)
        if ok:
            out.append(text)
        else:
            logger.debug("Dropping unresolved JVM argument %s", token)
    return out


def _canonical(path: Union[str, Path]) -> str:
    return os.path.normcase(os.path.realpath(str(path)))


def assemble_classpath(document: Dict[str, Any], libraries_dir: Path, client_jar: Path,
                       os_name: Optional[str] = None) -> List[str]:
    """
    Library artifacts allowed on this OS, in declaration order, followed by
    `client_jar`. An artifact declared more than once (same
    group:artifact:classifier) keeps the slot of its first declaration and
    the version of its last one; identical paths appear once.
    """
    order: List[str] = []
    chosen: Dict[str, Path] = {}
    for lib in document.get("libraries") or []:
        if not isinstance(lib, dict) or not library_allowed(lib, os_name):
            continue
        artifact = library_artifact(lib, libraries_dir)
        if artifact is None:
            continue
        key = library_identity(lib) if lib.get("name") else _canonical(artifact.path)
        if key not in chosen:
            order.append(key)
        chosen[key] = artifact.path

    entries: List[str] = []
    seen: Set[str] = {_canonical(client_jar)}
    for key in order:
        path = chosen[key]
        if _canonical(path) in seen:
            continue
        seen.add(_canonical(path))
        entries.append(str(path))
    entries.append(str(client_jar))
    return entries


def extract_natives(document: Dict[str, Any], libraries_dir: Path, natives_dir: Path,
                    os_name: Optional[str] = None) -> int:
    """
    Unpack legacy natives archives into `natives_dir` (``META-INF/`` and the
    library's ``extract.exclude`` prefixes skipped). Returns files written.
    """
    natives_dir = Path(natives_dir)
    written = 0
    for lib in document.get("libraries") or []:
        if not isinstance(lib, dict) or not library_allowed(lib, os_name):
            continue
        native = library_native(lib, libraries_dir, os_name)
        if native is None:
            continue
        if not native.path.is_file():
            logger.warning("Natives archive %s is missing; skipped", native.path.name)
            continue
        exclude = tuple(["META-INF/", *native.extract_exclude])
        try:
            with zipfile.ZipFile(native.path, "r") as zf:
                for info in zf.infolist():
                    name = info.filename.replace("\\", "/")
                    if info.is_dir() or name.startswith(exclude):
                        continue
                    rel = PurePosixPath(name)
                    if rel.is_absolute() or ".." in rel.parts:
                        raise FileOperationError(f"Unsafe path in natives archive: {name}",
                                                 context={"path": str(native.path)})
                    target = natives_dir.joinpath(*rel.parts)
                    if target.is_file() and target.stat().st_size == info.file_size:
                        continue
                    atomic_write(target, zf.read(info))
                    written += 1
        except zipfile.BadZipFile as exc:
            raise IntegrityFailure(f"Natives archive {native.path.name} is corrupt",
                                   context={"path": str(native.path)}) from exc
    return written


def launch_inputs_hash(record: InstanceRecord, config: EngineConfig, auth: LaunchAuth) -> str:
    """
    Hash of everything a plan is built from that does not need the network.
    A persisted plan is only reused when this is unchanged.
    """
    return stable_json_hash({
        "version": record.version,
        "loader": record.loader.value,
        "loaderVersion": record.loader_version or "",
        "gameDir": str(record.game_dir or ""),
        "javaMode": record.java_mode or config.java_mode,
        "javaPath": record.java_path or config.java_path or "",
        "memoryMin": record.memory_min_mb or config.memory_min_mb,
        "memoryMax": record.memory_max_mb or config.memory_max_mb,
        "launcherRoot": str(config.launcher_root),
        "username": auth.username,
        "uuid": auth.uuid,
        "userType": auth.user_type,
    })


def mask_secrets(args: Sequence[str], token: str) -> List[str]:
    """Copy of `args` with the value after each secret flag masked."""
    out = list(args)
    for i, arg in enumerate(out[:-1]):
        if arg in _SECRET_FLAGS and token not in ("", "0"):
            out[i + 1] = MASK
    return out


def apply_auth(plan: LaunchPlan, auth: LaunchAuth) -> LaunchPlan:
    """Bind `auth` to a reloaded plan: the values of secret flags are re-filled."""
    args = list(plan.game_args)
    for i, arg in enumerate(args[:-1]):
        if arg == "--accessToken":
            args[i + 1] = auth.access_token
        elif arg == "--session":
            args[i + 1] = f"token:{auth.access_token}:{auth.uuid}"
    plan.game_args = args
    plan.auth = auth
    return plan


class LaunchPlanBuilder:
    """
    Parameters
    ----------
    layout : LauncherLayout
        Shared directories (libraries, assets, versions).
    config : EngineConfig
        Memory defaults, launcher name/version and the client jar threshold.
    os_name : Optional[str]
        Target OS (defaults to the running one).
    """

    def __init__(self, layout: LauncherLayout, config: EngineConfig, *, os_name: Optional[str] = None):
        self.layout = layout
        self.config = config
        self.os_name = os_name or current_os_name()

    def _variables(self, *, record: InstanceRecord, paths: InstancePaths, document: Dict[str, Any],
                   auth: LaunchAuth, classpath: List[str], client_jar: Path) -> Dict[str, str]:
        assets_root = self.layout.assets_dir
        index = document.get("assetIndex") if isinstance(document.get("assetIndex"), dict) else {}
        index_id = index.get("id") or document.get("assets") or ""
        game_assets = assets_root
        if index_id:
            index_doc = read_json(self.layout.asset_indexes_dir / f"{index_id}.json", default={}) or {}
            if index_doc.get("map_to_resources"):
                game_assets = paths.game_dir / "resources"
            elif index_doc.get("virtual"):
                game_assets = assets_root / "virtual" / index_id
        sep = classpath_separator(self.os_name)
        variables = {
            "auth_player_name": auth.username,
            "auth_uuid": auth.uuid,
            "auth_access_token": auth.access_token,
            "auth_session": f"token:{auth.access_token}:{auth.uuid}",
            "user_type": auth.user_type,
            "user_properties": "{}",
            "version_name": str(document.get("id") or record.version),
            "version_type": str(document.get("type") or "release"),
            "game_directory": str(paths.game_dir),
            "assets_root": str(assets_root),
            "game_assets": str(game_assets),
            "assets_index_name": str(index_id),
            "natives_directory": str(paths.natives_dir),
            "launcher_name": self.config.launcher_name,
            "launcher_version": self.config.launcher_version,
            "classpath": sep.join(classpath),
            "classpath_separator": sep,
            "library_directory": str(self.layout.libraries_dir),
            "primary_jar": str(client_jar),
        }
        if auth.xuid not in ("", "0"):
            variables["auth_xuid"] = auth.xuid
        return variables

    def build(self,
              *,
              record: InstanceRecord,
              paths: InstancePaths,
              document: Dict[str, Any],
              java: JavaRuntime,
              auth: LaunchAuth,
              required_java_major: int,
              loader_version: Optional[str] = None,
              loader_profile_resolved: bool = True) -> LaunchPlan:
        """
        Build the plan for a merged `document`.

        Raises
        ------
        IntegrityFailure
            The client jar is missing, truncated, not an archive, lacks the
            client markers or does not match its declared sha1. The bad file
            is deleted so the next bootstrap downloads it again.
        """
        jar_id = jar_version_id(document)
        client_jar = self.layout.version_jar_path(jar_id)
        expected = client_download(document).get("sha1")
        jv = validate_client_jar(client_jar, expected, self.config.min_client_jar_bytes)
        if not jv.ok:
            if client_jar.exists():
                safe_remove(client_jar)
            raise IntegrityFailure(f"Client jar for {jar_id} is unusable: {jv.reason}",
                                   context={"path": str(client_jar)},
                                   hint="The jar was removed; the next launch downloads it again.")

        classpath = assemble_classpath(document, self.layout.libraries_dir, client_jar, self.os_name)
        extracted = extract_natives(document, self.layout.libraries_dir, paths.natives_dir, self.os_name)
        if extracted:
            logger.info("Extracted %d native files for %s", extracted, record.id)

        variables = self._variables(record=record, paths=paths, document=document, auth=auth,
                                    classpath=classpath, client_jar=client_jar)
        arguments = document.get("arguments") if isinstance(document.get("arguments"), dict) else {}
        if arguments.get("jvm"):
            jvm_raw = flatten_arguments(arguments["jvm"], self.os_name)
        else:
            jvm_raw = [*_LEGACY_OS_JVM_ARGS.get(self.os_name, ()), *LEGACY_JVM_ARGS]
        game_raw = flatten_arguments(arguments.get("game") or [], self.os_name)
        if document.get("minecraftArguments"):
            game_raw = str(document["minecraftArguments"]).split() + game_raw

        memory_min = record.memory_min_mb or self.config.memory_min_mb
        memory_max = record.memory_max_mb or self.config.memory_max_mb
        java_args = [f"-Xms{memory_min}M", f"-Xmx{memory_max}M", *resolve_jvm_arguments(jvm_raw, variables)]
        game_args = resolve_game_arguments(game_raw, variables)

        return LaunchPlan(
            java_path=str(java.path),
            java_args=java_args,
            game_args=game_args,
            main_class=str(document.get("mainClass") or record.loader.canonical_main_class),
            classpath_entries=classpath,
            classpath_separator=variables["classpath_separator"],
            game_dir=str(paths.game_dir),
            assets_dir=str(self.layout.assets_dir),
            libraries_dir=str(self.layout.libraries_dir),
            natives_dir=str(paths.natives_dir),
            version_json=str(paths.version_json_path),
            asset_index=variables["assets_index_name"] or None,
            required_java_major=required_java_major,
            resolved_java_major=java.major,
            loader=record.loader,
            loader_version=loader_version,
            loader_profile_resolved=loader_profile_resolved,
            version_id=variables["version_name"],
            minecraft_version=record.version,
            client_jar=str(client_jar),
            auth=auth,
            env={"JAVA_HOME": str(java.home), "MCRUNTIME_INSTANCE_ID": record.id},
        )

    def persist(self, paths: InstancePaths, plan: LaunchPlan, document: Dict[str, Any],
                inputs_hash: str = "") -> RuntimeVersionSnapshot:
        """Write the merged document, its snapshot, the plan and the command line."""
        snapshot = RuntimeVersionSnapshot(
            version_id=plan.version_id,
            loader=plan.loader,
            document_hash=document_hash(document),
            library_count=len(document.get("libraries") or []),
            inputs_hash=inputs_hash,
            created_at=utc_now_iso(),
        )
        write_json_atomic(paths.version_json_path, document)
        write_json_atomic(paths.runtime_state_path, snapshot.to_dict())
        stored = plan.to_dict(mask_token=True)
        stored["gameArgs"] = mask_secrets(plan.game_args, plan.auth.access_token)
        write_json_atomic(paths.launch_plan_path, stored)
        command = [plan.java_path, *plan.java_args, plan.main_class, *stored["gameArgs"]]
        atomic_write(paths.launch_command_path, (shlex.join(command) + "\n").encode("utf-8"))
        logger.debug("Persisted launch plan for %s (%d classpath entries)", paths.instance_root.name,
                     len(plan.classpath_entries))
        return snapshot


def load_snapshot(paths: InstancePaths) -> Optional[RuntimeVersionSnapshot]:
    data = read_json(paths.runtime_state_path)
    return RuntimeVersionSnapshot.from_dict(data) if isinstance(data, dict) else None


def load_persisted(paths: InstancePaths, *, inputs_hash: Optional[str] = None,
                   auth: Optional[LaunchAuth] = None) -> Optional[LaunchPlan]:
    """
    The stored plan, or None when anything is missing, unreadable, or the
    stored document no longer hashes to its snapshot (drift). With
    `inputs_hash`, a plan built from different inputs is rejected too.
    """
    snapshot = load_snapshot(paths)
    document = read_json(paths.version_json_path)
    raw = read_json(paths.launch_plan_path)
    if snapshot is None or not isinstance(document, dict) or not isinstance(raw, dict):
        return None
    if document_hash(document) != snapshot.document_hash:
        logger.info("Runtime document of %s drifted from its snapshot", paths.instance_root.name)
        return None
    if len(document.get("libraries") or []) != snapshot.library_count:
        return None
    if inputs_hash is not None and snapshot.inputs_hash != inputs_hash:
        logger.info("Launch inputs of %s changed; plan will be rebuilt", paths.instance_root.name)
        return None
    try:
        plan = LaunchPlan.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        logger.info("Ignoring unreadable launch plan %s: %s", paths.launch_plan_path, exc)
        return None
    if plan.loader is not snapshot.loader:
        return None
    return apply_auth(plan, auth) if auth is not None else plan


def clear_persisted(paths: InstancePaths) -> List[Path]:
    """Remove the persisted plan, command, merged document, snapshot and natives."""
    removed = []
    for p in (paths.launch_plan_path, paths.launch_command_path, paths.version_json_path,
              paths.runtime_state_path, paths.natives_dir):
        if p.exists():
            safe_remove(p)
            removed.append(p)
    return removed
