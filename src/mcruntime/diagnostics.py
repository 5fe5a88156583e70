"""
mcruntime.diagnostics
---------------------

Crash classification and fingerprinting for abnormal early exits.

A crash is classified from three signals, in this order:

1. the client jar itself (size, archive structure, client markers, sha1)
2. main class / loader consistency
3. patterns in the captured output (mod errors before loader errors)

The fingerprint hashes classification, normalized main class, loader, game
version and a normalized stack excerpt. Timestamps, thread names, hex
addresses, line numbers and lambda ids are stripped from the excerpt so two
runs failing the same way produce the same fingerprint.
"""

from __future__ import annotations

import re
import hashlib
import logging
from pathlib import Path
from typing import *

from .fileops import read_json, write_json_atomic
from .models import CrashClassification, LaunchPlan, LoaderCrashDiagnostic, LoaderKind
from .utils import utc_now_iso, utc_stamp
from .validator import DEFAULT_MIN_CLIENT_JAR_BYTES, JarValidation, validate_client_jar

logger = logging.getLogger(__name__)

STACK_EXCERPT_LINES = 12
LOG_TAIL_BYTES = 256 * 1024

_CORRUPT_JAR_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"java\.util\.zip\.ZipException",
    r"zip END header not found",
    r"Invalid or corrupt jarfile",
    r"error in opening zip file",
    r"invalid LOC header",
    r"Could not find or load main class net\.minecraft\.client\.main\.Main",
))

_MOD_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"Mod resolution failed",
    r"Incompatible mods? (found|set)",
    r"Mixin (apply|transformation|prepare) (for mod \S+ )?failed",
    r"MixinApplyError|MixinTransformerError|InvalidMixinException",
    r"ModLoadingException",
    r"FormattedException",
    r"missing mandatory dependenc",
    r"requires (mod|version) \S+ of",
    r"Duplicate mods? found",
))

_LOADER_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"ClassNotFoundException",
    r"NoClassDefFoundError",
    r"Could not find or load main class",
    r"java\.lang\.module\.FindException",
    r"java\.lang\.module\.ResolutionException",
    r"Module \S+ not found",
    r"Missing required launch target|Invalid launch target",
    r"InvalidLauncherSetupException",
    r"UnsupportedClassVersionError",
))

_INTERESTING = re.compile(r"(Exception|Error\b|Caused by|^\s*at\s|FAILED|failed)", re.IGNORECASE)

_NORMALIZERS = (
    # [12:34:56] / [12:34:56.789] / 2024-01-01 12:34:56,789
    (re.compile(r"^\s*\[?\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?\]?\s*"), ""),
    (re.compile(r"^\s*\[\d{2}:\d{2}:\d{2}(?:[.,]\d+)?\]\s*"), ""),
    # [main/ERROR] [Render thread/WARN] [Worker-Main-3/INFO]:
    (re.compile(r"^\s*\[[^\]]*/(?:TRACE|DEBUG|INFO|WARN|ERROR|FATAL)\]\s*(?:\[[^\]]*\])?:?\s*"), ""),
    (re.compile(r"\$\$Lambda\$?[\w/.$]*(?:/0x[0-9a-fA-F]+)?"), "$$Lambda"),
    (re.compile(r"lambda\$(\w+)\$\d+"), r"lambda$\1"),
    (re.compile(r"0x[0-9a-fA-F]+"), "0x?"),
    (re.compile(r"@[0-9a-fA-F]{5,}\b"), "@?"),
    (re.compile(r"\(([\w$.-]+\.(?:java|kt|scala)):\d+\)"), r"(\1)"),
    (re.compile(r"~?\[[^\]]*\.jar(?:%\d+)*[^\]]*\]"), ""),
    (re.compile(r"\s+"), " "),
)


def read_log_tail(path: Optional[Union[str, Path]], max_bytes: int = LOG_TAIL_BYTES) -> str:
    """Last `max_bytes` of a log file as text; "" when missing or unreadable."""
    if not path:
        return ""
    path = Path(path)
    try:
        size = path.stat().st_size
        with open(path, "rb") as f:
            if size > max_bytes:
                f.seek(size - max_bytes)
            data = f.read()
    except OSError:
        return ""
    return data.decode("utf-8", errors="replace")


def normalize_log_line(line: str) -> str:
    text = line.rstrip()
    for pattern, repl in _NORMALIZERS:
        text = pattern.sub(repl, text)
    return text.strip()


def stack_excerpt(text: str, limit: int = STACK_EXCERPT_LINES) -> List[str]:
    """
    The last `limit` error-looking lines of `text`, normalized, with
    consecutive duplicates collapsed.
    """
    picked: List[str] = []
    for raw in (text or "").splitlines():
        if not _INTERESTING.search(raw):
            continue
        line = normalize_log_line(raw)
        if line and (not picked or picked[-1] != line):
            picked.append(line)
    return picked[-limit:]


def classify_crash(log_text: str,
                   jar: JarValidation,
                   main_class: str,
                   loader: LoaderKind) -> CrashClassification:
    """Map the evidence of one failed run to a CrashClassification."""
    if not jar.ok or any(p.search(log_text) for p in _CORRUPT_JAR_PATTERNS):
        return CrashClassification.CORRUPT_MINECRAFT_JAR
    if main_class not in loader.accepted_main_classes:
        return CrashClassification.LOADER_PROFILE_MISMATCH
    if loader is not LoaderKind.VANILLA and any(p.search(log_text) for p in _MOD_PATTERNS):
        return CrashClassification.MOD_EARLY_BOOT_INCOMPATIBILITY
    if any(p.search(log_text) for p in _LOADER_PATTERNS):
        return CrashClassification.LOADER_PROFILE_MISMATCH
    return CrashClassification.UNKNOWN_EARLY_LOADER_FAILURE


def crash_fingerprint(classification: CrashClassification,
                      main_class: str,
                      loader: str,
                      version: str,
                      excerpt: Sequence[str]) -> str:
    """Stable sha1 over the crash identity; equal inputs give equal fingerprints."""
    parts = [classification.value, (main_class or "").strip().lower(), (loader or "").strip().lower(),
             (version or "").strip(), "\n".join(excerpt)]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def diagnose_crash(plan: LaunchPlan,
                   *,
                   instance_id: str,
                   exit_code: Optional[int],
                   logs: Iterable[Optional[Union[str, Path]]] = (),
                   safe_mode: bool = False,
                   min_jar_bytes: int = DEFAULT_MIN_CLIENT_JAR_BYTES) -> LoaderCrashDiagnostic:
    """
    Build the diagnostic for one abnormal exit of `plan`.

    Parameters
    ----------
    plan : LaunchPlan
        The plan that was launched.
    instance_id : str
        Instance the run belonged to.
    exit_code : Optional[int]
        Process exit status (None if unknown).
    logs : Iterable[path]
        Captured output files (stdout, stderr, crash reports), read from the tail.
    safe_mode : bool
        Whether the run had its mods moved aside.
    min_jar_bytes : int
        Client jar size threshold.
    """
    version_doc = read_json(Path(plan.version_json)) if plan.version_json else None
    version_doc = version_doc if isinstance(version_doc, dict) else {}
    client = (version_doc.get("downloads") or {}).get("client") or {}
    expected_sha1 = client.get("sha1") if isinstance(client, dict) else None

    jar = validate_client_jar(plan.client_jar, expected_sha1, min_jar_bytes) if plan.client_jar \
        else JarValidation(ok=False, reason="missing")
    text = "\n".join(read_log_tail(p) for p in logs)
    classification = classify_crash(text, jar, plan.main_class, plan.loader)
    excerpt = stack_excerpt(text)
    fingerprint = crash_fingerprint(classification, plan.main_class, plan.loader.value,
                                    plan.minecraft_version, excerpt)
    logger.info("Crash of %s classified as %s (fingerprint %s)", instance_id, classification.value,
                fingerprint[:12])
    return LoaderCrashDiagnostic(
        timestamp=utc_now_iso(),
        instance_id=instance_id,
        version=plan.minecraft_version,
        loader=plan.loader.value,
        loader_version=plan.loader_version,
        main_class=plan.main_class,
        exit_code=exit_code,
        classification=classification,
        fingerprint=fingerprint,
        jar_path=plan.client_jar,
        jar_size_bytes=jar.size,
        jar_sha1=jar.sha1,
        expected_client_sha1=expected_sha1,
        jar_is_zip=jar.is_zip,
        jar_has_client_markers=jar.has_client_markers,
        version_json_path=plan.version_json or None,
        version_json_inherits_from=version_doc.get("inheritsFrom"),
        version_json_jar=version_doc.get("jar"),
        stack_excerpt=excerpt,
        safe_mode=safe_mode,
    )


def write_diagnostic(diagnostic: LoaderCrashDiagnostic, directory: Path) -> Path:
    """Persist one diagnostic as ``crash-<stamp>-<fingerprint8>.json``; returns the path."""
    path = Path(directory) / f"crash-{utc_stamp()}-{diagnostic.fingerprint[:8]}.json"
    write_json_atomic(path, diagnostic.to_dict())
    logger.warning("Crash diagnostic written to %s", path)
    return path


def recent_crash_reports(crash_reports_dir: Path, since: float) -> List[Path]:
    """Game crash reports written at or after `since` (epoch seconds), newest first."""
    crash_reports_dir = Path(crash_reports_dir)
    if not crash_reports_dir.is_dir():
        return []
    found = [p for p in crash_reports_dir.glob("crash-*.txt") if p.stat().st_mtime >= since]
    return sorted(found, key=lambda p: p.stat().st_mtime, reverse=True)
