"""
mcruntime.config
----------------

Engine configuration: network tuning, Java preference, concurrency bounds and
timeouts. Values come from defaults, an optional JSON file and ``MCRUNTIME_*``
environment variables, in that order.
"""

from __future__ import annotations

import os
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import *

from .exceptions import ConfigurationError
from .paths import default_global_cache_dir, default_launcher_root

logger = logging.getLogger(__name__)

JAVA_MODES = ("auto", "system", "embedded", "custom")


@dataclass
class NetworkTuning:
    """
    Timeouts and retry budget applied to every HTTP request.

    Attributes
    ----------
    connect_timeout : float
        Seconds to wait for a TCP/TLS connection.
    request_timeout : float
        Seconds to wait between bytes of a response.
    retries : int
        Attempts per URL candidate list (each attempt walks every candidate).
    backoff_base : float
        Base of the exponential backoff between attempts.
    user_agent : Optional[str]
        Overrides the default User-Agent.
    """
    connect_timeout: float = 12.0
    request_timeout: float = 120.0
    retries: int = 4
    backoff_base: float = 0.6
    user_agent: Optional[str] = None

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.request_timeout)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NetworkTuning":
        d = d or {}
        return cls(
            connect_timeout=float(d.get("connect_timeout", d.get("connectTimeoutSecs", 12.0))),
            request_timeout=float(d.get("request_timeout", d.get("requestTimeoutSecs", 120.0))),
            retries=int(d.get("retries", 4)),
            backoff_base=float(d.get("backoff_base", 0.6)),
            user_agent=d.get("user_agent"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EngineConfig:
    """Everything the engine needs besides the instance record itself."""
    launcher_root: Path = field(default_factory=default_launcher_root)
    global_cache_dir: Path = field(default_factory=default_global_cache_dir)
    network: NetworkTuning = field(default_factory=NetworkTuning)
    java_mode: str = "auto"
    java_path: Optional[str] = None
    asset_concurrency_factor: int = 8
    asset_concurrency_cap: int = 64
    library_concurrency_factor: int = 2
    library_concurrency_cap: int = 16
    installer_timeout: float = 600.0
    early_exit_window: float = 8.0
    poll_interval: float = 0.25
    min_client_jar_bytes: int = 512 * 1024
    memory_min_mb: int = 512
    memory_max_mb: int = 4096
    manifest_ttl: int = 3600
    progress: bool = False
    launcher_name: str = "mcruntime"
    launcher_version: str = "0.1.0"

    def __post_init__(self) -> None:
        self.launcher_root = Path(self.launcher_root).expanduser()
        self.global_cache_dir = Path(self.global_cache_dir).expanduser()
        self.validate()

    def validate(self) -> None:
        """
        Raises
        ------
        ConfigurationError
            If a value is out of range.
        """
        if self.java_mode not in JAVA_MODES:
            raise ConfigurationError(f"Unknown java mode {self.java_mode!r}",
                                     context={"allowed": "/".join(JAVA_MODES)})
        if self.java_mode == "custom" and not self.java_path:
            raise ConfigurationError("java_mode 'custom' requires java_path")
        if self.network.retries < 1:
            raise ConfigurationError("network.retries must be >= 1")
        if self.network.connect_timeout <= 0 or self.network.request_timeout <= 0:
            raise ConfigurationError("network timeouts must be positive")
        for name in ("asset_concurrency_factor", "asset_concurrency_cap",
                     "library_concurrency_factor", "library_concurrency_cap"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1")
        if self.installer_timeout <= 0 or self.early_exit_window < 0 or self.poll_interval <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.memory_max_mb < self.memory_min_mb:
            raise ConfigurationError("memory_max_mb must be >= memory_min_mb")

    def concurrency_for(self, kind: str) -> int:
        """Slot count for a download kind, a multiple of the CPU count."""
        cpus = os.cpu_count() or 4
        if kind == "asset":
            return max(1, min(cpus * self.asset_concurrency_factor, self.asset_concurrency_cap))
        return max(1, min(cpus * self.library_concurrency_factor, self.library_concurrency_cap))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EngineConfig":
        d = dict(d or {})
        kwargs: Dict[str, Any] = {}
        if "network" in d:
            kwargs["network"] = NetworkTuning.from_dict(d.pop("network"))
        java = d.pop("java", None)
        if isinstance(java, dict):
            if java.get("mode"):
                kwargs["java_mode"] = str(java["mode"]).lower()
            if java.get("path"):
                kwargs["java_path"] = java["path"]
        known = {f for f in cls.__dataclass_fields__ if f != "network"}
        for key, value in d.items():
            if key in known:
                kwargs[key] = value
            else:
                logger.debug("Ignoring unknown config key %r", key)
        try:
            return cls(**kwargs)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["launcher_root"] = str(self.launcher_root)
        d["global_cache_dir"] = str(self.global_cache_dir)
        return d


_ENV_PREFIX = "MCRUNTIME_"
_ENV_FIELDS = {
    "ROOT": ("launcher_root", str),
    "GLOBAL_CACHE": ("global_cache_dir", str),
    "JAVA_MODE": ("java_mode", str),
    "JAVA_PATH": ("java_path", str),
    "INSTALLER_TIMEOUT": ("installer_timeout", float),
    "MEMORY_MAX_MB": ("memory_max_mb", int),
}


def load_config(path: Optional[Union[str, Path]] = None,
                env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from an optional JSON file plus environment overrides.

    Parameters
    ----------
    path : Optional[str | Path]
        JSON config file. A missing file means defaults.
    env : Optional[Mapping[str, str]]
        Environment to read ``MCRUNTIME_*`` overrides from (defaults to os.environ).

    Raises
    ------
    ConfigurationError
        If the file is not valid JSON or a value is invalid.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        p = Path(path).expanduser()
        if p.is_file():
            try:
                data = json.loads(p.read_text(encoding="utf-8")) or {}
            except (OSError, json.JSONDecodeError) as exc:
                raise ConfigurationError(f"Cannot read config file: {exc}", context={"path": str(p)}) from exc
            if not isinstance(data, dict):
                raise ConfigurationError("Config file must contain a JSON object", context={"path": str(p)})
        else:
            logger.debug("Config file %s not found; using defaults", p)

    env = os.environ if env is None else env
    for suffix, (key, conv) in _ENV_FIELDS.items():
        raw = env.get(_ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            data[key] = conv(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for {_ENV_PREFIX + suffix}: {raw!r}") from exc
    return EngineConfig.from_dict(data)
