"""
models.py

Typed dataclasses shared by the engine modules.

Purpose
-------
- Provide documented containers for plans, reports, diagnostics and tasks.
- Supply `from_dict()` / `to_dict()` so persisted documents (launch-plan.json,
  runtime_state.json, diagnostic files) round-trip without ad-hoc dict handling.
- Version and loader documents themselves are NOT modelled here: they stay
  plain nested dicts because upstream schemas change between releases.

Notes
-----
- Persisted documents use camelCase keys; Python attributes use snake_case.
"""

from __future__ import annotations

import hashlib
import uuid as _uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import dateutil.parser as _dateutil_parser


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return _dateutil_parser.isoparse(str(value))
    except (ValueError, OverflowError):
        return None


# Enums
class LoaderKind(str, Enum):
    """Supported mod loaders. ``vanilla`` means no loader."""
    VANILLA = "vanilla"
    FABRIC = "fabric"
    QUILT = "quilt"
    FORGE = "forge"
    NEOFORGE = "neoforge"

    @classmethod
    def parse(cls, value: Optional[str]) -> "LoaderKind":
        """
        Tolerant parse: None/""/"none" -> VANILLA, case and separators ignored
        ("NeoForge", "neo-forge" -> NEOFORGE).
        """
        if isinstance(value, LoaderKind):
            return value
        text = (value or "").strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        if text in ("", "none", "vanilla", "minecraft"):
            return cls.VANILLA
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown loader {value!r}")

    @property
    def is_forge_like(self) -> bool:
        return self in (LoaderKind.FORGE, LoaderKind.NEOFORGE)

    @property
    def is_fabric_like(self) -> bool:
        return self in (LoaderKind.FABRIC, LoaderKind.QUILT)

    @property
    def canonical_main_class(self) -> str:
        return CANONICAL_MAIN_CLASSES[self]

    @property
    def accepted_main_classes(self) -> Tuple[str, ...]:
        """Entrypoints accepted for this loader (forge-like loaders have a bootstrap chain)."""
        if self.is_forge_like:
            return FORGE_BOOTSTRAP_MAIN_CLASSES
        if self is LoaderKind.FABRIC:
            # loader < 0.12 still ships the pre-"impl" package
            return (self.canonical_main_class, "net.fabricmc.loader.launch.knot.KnotClient")
        if self is LoaderKind.VANILLA:
            # 1.5.2 and older boot through LaunchWrapper or the applet class
            return (self.canonical_main_class, "net.minecraft.launchwrapper.Launch",
                    "net.minecraft.client.Minecraft")
        return (self.canonical_main_class,)


CANONICAL_MAIN_CLASSES: Dict[LoaderKind, str] = {
    LoaderKind.VANILLA: "net.minecraft.client.main.Main",
    LoaderKind.FABRIC: "net.fabricmc.loader.impl.launch.knot.KnotClient",
    LoaderKind.QUILT: "org.quiltmc.loader.impl.launch.knot.KnotClient",
    LoaderKind.FORGE: "cpw.mods.bootstraplauncher.BootstrapLauncher",
    LoaderKind.NEOFORGE: "cpw.mods.bootstraplauncher.BootstrapLauncher",
}

# Forge 1.17+ and NeoForge use BootstrapLauncher, Forge 1.13-1.16 ModLauncher,
# Forge <= 1.12 LaunchWrapper, recent NeoForge its own startup class.
FORGE_BOOTSTRAP_MAIN_CLASSES: Tuple[str, ...] = (
    "cpw.mods.bootstraplauncher.BootstrapLauncher",
    "cpw.mods.modlauncher.Launcher",
    "net.minecraft.launchwrapper.Launch",
    "net.neoforged.fml.startup.Client",
)


class CrashClassification(str, Enum):
    CORRUPT_MINECRAFT_JAR = "corrupt_minecraft_jar"
    LOADER_PROFILE_MISMATCH = "loader_profile_mismatch"
    MOD_EARLY_BOOT_INCOMPATIBILITY = "mod_early_boot_incompatibility"
    UNKNOWN_EARLY_LOADER_FAILURE = "unknown_early_loader_failure"


class RepairMode(str, Enum):
    SMART = "smart"
    FULL = "full"
    VERIFY_ONLY = "verify_only"
    MODS_ONLY = "mods_only"
    REINSTALL_LOADER = "reinstall_loader"
    REPAIR_AND_OPTIMIZE = "repair_and_optimize"
    VERIFY_INTEGRITY = "verify_integrity"

    @classmethod
    def parse(cls, value: Any) -> "RepairMode":
        if isinstance(value, RepairMode):
            return value
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {"verify": cls.VERIFY_ONLY, "mods": cls.MODS_ONLY, "loader": cls.REINSTALL_LOADER,
                   "optimize": cls.REPAIR_AND_OPTIMIZE, "integrity": cls.VERIFY_INTEGRITY}
        if text in aliases:
            return aliases[text]
        return cls(text)

    @property
    def mutates(self) -> bool:
        return self is not RepairMode.VERIFY_ONLY


class LaunchState(str, Enum):
    """Status values written to the instance state document."""
    IDLE = "idle"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    PREPARING = "preparing"
    READY = "ready"
    LAUNCHING = "launching"
    RUNNING = "running"
    CRASHED = "crashed"
    FINISHED = "finished"
    REPAIRING = "repairing"
    FAILED = "failed"


# Inputs
@dataclass
class InstanceRecord:
    """
    Instance description handed over by the instance registry.

    Attributes
    ----------
    id : str
        Stable instance identifier (lock key).
    name : str
        Display name.
    version : str
        Game version id, e.g. "1.20.1".
    loader : LoaderKind
        Requested loader.
    loader_version : Optional[str]
        Requested loader version; None/"latest" picks one automatically.
    root : Path
        Instance root directory.
    game_dir : Optional[Path]
        Explicit game directory (otherwise resolved by InstancePaths).
    java_mode / java_path : Optional[str]
        Per-instance override of the engine Java preference.
    memory_max_mb / memory_min_mb : Optional[int]
        Per-instance heap bounds.
    """
    id: str
    name: str
    version: str
    loader: LoaderKind
    root: Path
    loader_version: Optional[str] = None
    game_dir: Optional[Path] = None
    java_mode: Optional[str] = None
    java_path: Optional[str] = None
    memory_max_mb: Optional[int] = None
    memory_min_mb: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.loader = LoaderKind.parse(self.loader)
        self.root = Path(self.root)
        if self.game_dir is not None:
            self.game_dir = Path(self.game_dir)

    @classmethod
    def from_dict(cls, d: Dict[str, Any], root: Optional[Path] = None) -> "InstanceRecord":
        """
        Build from an ``instance.json``-style mapping. Accepts both the registry
        keys (``minecraft_version``, ``modloader``) and the short ones.
        """
        d = d or {}
        java = d.get("java") if isinstance(d.get("java"), dict) else {}
        base = root or d.get("root") or d.get("path") or "."
        return cls(
            id=str(d.get("id") or d.get("name") or Path(str(base)).name),
            name=str(d.get("name") or d.get("id") or Path(str(base)).name),
            version=str(d.get("minecraft_version") or d.get("version") or ""),
            loader=d.get("modloader") or d.get("loader") or "vanilla",
            loader_version=d.get("modloader_version") or d.get("loader_version"),
            root=Path(base),
            game_dir=d.get("game_dir"),
            java_mode=java.get("mode") or d.get("java_mode"),
            java_path=java.get("path") or d.get("java_path"),
            memory_max_mb=d.get("memory_max_mb") or d.get("max_memory"),
            memory_min_mb=d.get("memory_min_mb") or d.get("min_memory"),
            data=d,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "minecraft_version": self.version,
            "modloader": self.loader.value,
            "modloader_version": self.loader_version,
            "game_dir": str(self.game_dir) if self.game_dir else None,
            "java": {"mode": self.java_mode, "path": self.java_path},
            "memory_max_mb": self.memory_max_mb,
            "memory_min_mb": self.memory_min_mb,
        }


@dataclass
class LaunchAuth:
    username: str
    uuid: str
    access_token: str = "0"
    user_type: str = "legacy"
    xuid: str = "0"

    @classmethod
    def offline(cls, username: str) -> "LaunchAuth":
        """Offline profile with the UUID vanilla derives from ``OfflinePlayer:<name>``."""
        digest = bytearray(hashlib.md5(f"OfflinePlayer:{username}".encode("utf-8")).digest())
        digest[6] = (digest[6] & 0x0F) | 0x30
        digest[8] = (digest[8] & 0x3F) | 0x80
        return cls(username=username, uuid=_uuid.UUID(bytes=bytes(digest)).hex,
                   access_token="0", user_type="legacy")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LaunchAuth":
        d = d or {}
        return cls(
            username=d.get("username", "Player"),
            uuid=d.get("uuid", ""),
            access_token=d.get("accessToken", d.get("access_token", "0")),
            user_type=d.get("userType", d.get("user_type", "legacy")),
            xuid=d.get("xuid", "0"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "uuid": self.uuid, "accessToken": self.access_token,
                "userType": self.user_type, "xuid": self.xuid}

    def public_dict(self) -> Dict[str, Any]:
        """Same as to_dict() with the access token masked (for persisted files)."""
        d = self.to_dict()
        if d["accessToken"] not in ("", "0"):
            d["accessToken"] = "***"
        return d


# Download engine
@dataclass
class DownloadTask:
    """
    One file to materialize at `destination`.

    Attributes
    ----------
    urls : List[str]
        Ordered URL candidates.
    destination : Path
        Final path.
    sha1 : Optional[str]
        Expected sha1 (hex). Enables cache lookups and verification.
    size : Optional[int]
        Expected size in bytes.
    kind : str
        "asset", "library", "client", "metadata", "runtime", "installer" ...
        Selects the concurrency bound.
    require_archive : bool
        Reject the payload unless it is a structurally valid zip/jar.
    retries : Optional[int]
        Override of the engine retry budget.
    label : Optional[str]
        Human readable name for logs and progress.
    """
    urls: List[str]
    destination: Path
    sha1: Optional[str] = None
    size: Optional[int] = None
    kind: str = "library"
    require_archive: bool = False
    retries: Optional[int] = None
    label: Optional[str] = None

    def __post_init__(self) -> None:
        self.destination = Path(self.destination)
        if self.sha1:
            self.sha1 = self.sha1.lower()
        seen = set()
        ordered = []
        for url in self.urls:
            if url and url not in seen:
                seen.add(url)
                ordered.append(url)
        self.urls = ordered

    @property
    def name(self) -> str:
        return self.label or self.destination.name


@dataclass
class DownloadResult:
    """
    Result of one materialized task.

    Attributes
    ----------
    path : Path
        Final path of the file.
    source : str
        "existing" (already valid on disk), "cache" or "network".
    url : Optional[str]
        URL that delivered the payload (network source only).
    attempts : int
        Number of attempts performed.
    bytes : int
        Bytes received from the network.
    """
    path: Path
    source: str
    url: Optional[str] = None
    attempts: int = 0
    bytes: int = 0


# Version resolution
@dataclass
class VersionManifestEntry:
    id: str
    type: str
    url: str
    sha1: Optional[str] = None
    release_time: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VersionManifestEntry":
        d = d or {}
        return cls(
            id=d.get("id", ""),
            type=d.get("type", "release"),
            url=d.get("url", ""),
            sha1=d.get("sha1"),
            release_time=_parse_dt(d.get("releaseTime")),
            data=d,
        )


@dataclass
class LoaderProfile:
    """
    An installed loader profile.

    ``document`` is the loader's version JSON after normalization; its
    ``inheritsFrom`` names ``parent_version``.
    """
    loader: LoaderKind
    profile_id: str
    loader_version: Optional[str]
    parent_version: str
    document: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    @property
    def main_class(self) -> Optional[str]:
        return self.document.get("mainClass")


@dataclass
class JavaRuntime:
    path: Path
    major: int
    version: str = ""
    arch: Optional[str] = None
    source: str = "system"

    @property
    def home(self) -> Path:
        # <home>/bin/java
        return Path(self.path).parent.parent

    def to_dict(self) -> Dict[str, Any]:
        return {"path": str(self.path), "major": self.major, "version": self.version,
                "arch": self.arch, "source": self.source}


# Launch plan
@dataclass
class LaunchPlan:
    """
    Fully resolved command and environment for one launch.

    Persisted as ``launch-plan.json`` next to ``launch-command.txt``. The
    plan is reused while it still validates and its snapshot matches.
    """
    java_path: str
    java_args: List[str]
    game_args: List[str]
    main_class: str
    classpath_entries: List[str]
    classpath_separator: str
    game_dir: str
    assets_dir: str
    libraries_dir: str
    natives_dir: str
    version_json: str
    asset_index: Optional[str]
    required_java_major: int
    resolved_java_major: int
    loader: LoaderKind
    loader_version: Optional[str]
    loader_profile_resolved: bool
    version_id: str
    minecraft_version: str
    client_jar: str
    auth: LaunchAuth
    env: Dict[str, str] = field(default_factory=dict)

    def command_line(self) -> List[str]:
        return [self.java_path, *self.java_args, self.main_class, *self.game_args]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LaunchPlan":
        d = d or {}
        return cls(
            java_path=d["javaPath"],
            java_args=list(d.get("javaArgs") or []),
            game_args=list(d.get("gameArgs") or []),
            main_class=d["mainClass"],
            classpath_entries=list(d.get("classpathEntries") or []),
            classpath_separator=d.get("classpathSeparator", ":"),
            game_dir=d.get("gameDir", ""),
            assets_dir=d.get("assetsDir", ""),
            libraries_dir=d.get("librariesDir", ""),
            natives_dir=d.get("nativesDir", ""),
            version_json=d.get("versionJson", ""),
            asset_index=d.get("assetIndex"),
            required_java_major=int(d.get("requiredJavaMajor") or 0),
            resolved_java_major=int(d.get("resolvedJavaMajor") or 0),
            loader=LoaderKind.parse(d.get("loader")),
            loader_version=d.get("loaderVersion"),
            loader_profile_resolved=bool(d.get("loaderProfileResolved")),
            version_id=d.get("versionId", ""),
            minecraft_version=d.get("minecraftVersion", ""),
            client_jar=d.get("clientJar", ""),
            auth=LaunchAuth.from_dict(d.get("auth") or {}),
            env=dict(d.get("env") or {}),
        )

    def to_dict(self, *, mask_token: bool = False) -> Dict[str, Any]:
        return {
            "javaPath": self.java_path,
            "javaArgs": list(self.java_args),
            "gameArgs": list(self.game_args),
            "mainClass": self.main_class,
            "classpathEntries": list(self.classpath_entries),
            "classpathSeparator": self.classpath_separator,
            "gameDir": self.game_dir,
            "assetsDir": self.assets_dir,
            "librariesDir": self.libraries_dir,
            "nativesDir": self.natives_dir,
            "versionJson": self.version_json,
            "assetIndex": self.asset_index,
            "requiredJavaMajor": self.required_java_major,
            "resolvedJavaMajor": self.resolved_java_major,
            "loader": self.loader.value,
            "loaderVersion": self.loader_version,
            "loaderProfileResolved": self.loader_profile_resolved,
            "versionId": self.version_id,
            "minecraftVersion": self.minecraft_version,
            "clientJar": self.client_jar,
            "auth": self.auth.public_dict() if mask_token else self.auth.to_dict(),
            "env": dict(self.env),
        }


@dataclass
class RuntimeVersionSnapshot:
    version_id: str
    loader: LoaderKind
    document_hash: str
    library_count: int
    inputs_hash: str = ""
    created_at: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RuntimeVersionSnapshot":
        d = d or {}
        return cls(
            version_id=d.get("versionId", ""),
            loader=LoaderKind.parse(d.get("loader")),
            document_hash=d.get("documentHash", ""),
            library_count=int(d.get("libraryCount") or 0),
            inputs_hash=d.get("inputsHash", ""),
            created_at=d.get("createdAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"versionId": self.version_id, "loader": self.loader.value,
                "documentHash": self.document_hash, "libraryCount": self.library_count,
                "inputsHash": self.inputs_hash, "createdAt": self.created_at}


# Validation
@dataclass
class ValidationReport:
    """
    Outcome of pre-flight validation.

    `checks` maps every check name to its boolean result. A failing required
    check lists its name in `errors`; advisory checks only add to `warnings`.
    """
    ok: bool = True
    checks: Dict[str, bool] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, str] = field(default_factory=dict)

    def record(self, name: str, passed: bool, detail: Optional[str] = None, *, required: bool = True) -> bool:
        self.checks[name] = bool(passed)
        if detail:
            self.details[name] = detail
        if not passed:
            if required:
                self.ok = False
                if name not in self.errors:
                    self.errors.append(name)
            else:
                self.warnings.append(f"{name}: {detail}" if detail else name)
        return bool(passed)

    def failed_checks(self) -> List[str]:
        return list(self.errors)

    def summary(self) -> str:
        if self.ok:
            return "all required checks passed"
        return ", ".join(f"{n} ({self.details[n]})" if n in self.details else n for n in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModInspection:
    path: Path
    mod_id: Optional[str] = None
    loaders: Tuple[str, ...] = ()
    dependencies: Dict[str, str] = field(default_factory=dict)
    minecraft: Optional[str] = None
    valid_archive: bool = True

    @property
    def has_metadata(self) -> bool:
        return bool(self.loaders)


# Crash diagnostics
@dataclass
class LoaderCrashDiagnostic:
    timestamp: str
    instance_id: str
    version: str
    loader: str
    loader_version: Optional[str]
    main_class: str
    exit_code: Optional[int]
    classification: CrashClassification
    fingerprint: str
    jar_path: str
    jar_size_bytes: Optional[int] = None
    jar_sha1: Optional[str] = None
    expected_client_sha1: Optional[str] = None
    jar_is_zip: bool = False
    jar_has_client_markers: bool = False
    version_json_path: Optional[str] = None
    version_json_inherits_from: Optional[str] = None
    version_json_jar: Optional[str] = None
    stack_excerpt: List[str] = field(default_factory=list)
    safe_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["classification"] = self.classification.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LoaderCrashDiagnostic":
        d = dict(d or {})
        d["classification"] = CrashClassification(d.get("classification",
                                                        CrashClassification.UNKNOWN_EARLY_LOADER_FAILURE.value))
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class LaunchOutcome:
    """What a successful launch session produced."""
    pid: int
    attempts: int
    safe_mode: bool = False
    classification: Optional[CrashClassification] = None
    diagnostics: List[str] = field(default_factory=list)
    stdout_path: Optional[Path] = None
    stderr_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    process: Any = None


# Repair
@dataclass
class RepairReport:
    libraries_fixed: int = 0
    assets_fixed: int = 0
    mods_fixed: int = 0
    loader_reinstalled: bool = False
    config_regenerated: bool = False
    world_backed_up: bool = False
    dependencies_fixed: int = 0
    version_fixed: bool = False
    checked_only: bool = False
    optimized: bool = False
    issues_detected: List[str] = field(default_factory=list)

    def add_issue(self, issue: str) -> None:
        if issue not in self.issues_detected:
            self.issues_detected.append(issue)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepairSummary:
    mode: RepairMode
    report: RepairReport
    message: str
    instance_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode.value, "instanceId": self.instance_id,
                "message": self.message, "report": self.report.to_dict()}
