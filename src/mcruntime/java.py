"""
mcruntime.java
--------------

Java runtime policy and provisioning.

- required_java_major_for_version / required_java_major: which Java a game version needs
- java_satisfies: whether an installed major can run it
- probe_java: run ``java -version`` and parse the answer
- discover_java_candidates: JAVA_HOME, PATH and the usual install folders
- JavaProvisioner: pick a runtime by mode, or download one from Adoptium
"""

from __future__ import annotations

import os
import re
import glob
import shutil
import logging
import tarfile
import zipfile
import subprocess
from pathlib import Path, PurePosixPath
from typing import *

from .client import MetadataClient
from .download import DownloadManager
from .exceptions import FileOperationError, IntegrityFailure, MissingMetadataFailure
from .fileops import safe_remove
from .maven import current_arch
from .models import DownloadTask, JavaRuntime
from .paths import LauncherLayout, current_os_name
from .routes import adoptium_latest_url
from .utils import file_digest

logger = logging.getLogger(__name__)

DEFAULT_JAVA_MAJOR = 17

_JAVA_VERSION_LINE = re.compile(r'version\s+"([^"]+)"')
_OPENJ9_VERSION = re.compile(r"^(?:openjdk|java)\s+(\d+(?:\.\d+)*)", re.MULTILINE)


def required_java_major_for_version(mc_version: str) -> int:
    """
    Java major needed by a release id.

    1.20.5 and later -> 21, 1.17 to 1.20.4 -> 17, 1.16.5 and older -> 8.
    Year-based ids ("25.1") follow the same thresholds on their first two
    parts. Snapshots and anything unparseable -> 17.
    """
    text = (mc_version or "").strip().lstrip("vV")
    match = re.match(r"^(\d+)\.(\d+)(?:\.(\d+))?", text)
    if not match:
        return DEFAULT_JAVA_MAJOR
    major, minor, patch = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    if major == 1:
        if minor > 20 or (minor == 20 and patch >= 5):
            return 21
        if minor >= 17:
            return 17
        return 8
    if major > 20 or (major == 20 and minor >= 5):
        return 21
    if major >= 17:
        return 17
    return 8


def _declared_major(document: Optional[Dict[str, Any]]) -> Optional[int]:
    if not isinstance(document, dict):
        return None
    java = document.get("javaVersion")
    if isinstance(java, dict):
        try:
            value = int(java.get("majorVersion"))
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None
    return None


def required_java_major(mc_version: str,
                        document: Optional[Dict[str, Any]] = None,
                        loader_document: Optional[Dict[str, Any]] = None) -> int:
    """Declared ``javaVersion.majorVersion`` (loader profile first) or the version policy."""
    return (_declared_major(loader_document)
            or _declared_major(document)
            or required_java_major_for_version(mc_version))


def java_satisfies(actual: int, required: int) -> bool:
    """A runtime satisfies any requirement at or below its own major version."""
    return actual >= required


def parse_java_version_output(text: str) -> Optional[Tuple[str, int]]:
    """
    Parse ``java -version`` output into (version string, major).

    >>> parse_java_version_output('openjdk version "17.0.8" 2023-07-18')
    ('17.0.8', 17)
    >>> parse_java_version_output('java version "1.8.0_381"')
    ('1.8.0_381', 8)
    """
    match = _JAVA_VERSION_LINE.search(text or "") or _OPENJ9_VERSION.search(text or "")
    if not match:
        return None
    version = match.group(1)
    parts = re.split(r"[._+\-]", version)
    try:
        first = int(parts[0])
        major = int(parts[1]) if first == 1 and len(parts) > 1 else first
    except ValueError:
        return None
    return version, major


def java_executable_name() -> str:
    return "java.exe" if current_os_name() == "windows" else "java"


def probe_java(path: Union[str, Path], timeout: float = 20.0, source: str = "system") -> Optional[JavaRuntime]:
    """
    Run ``<path> -version``. Returns None when the binary is missing, exits
    non-zero, hangs, or prints something unparseable.
    """
    path = Path(path)
    if not path.is_file():
        return None
    try:
        proc = subprocess.run([str(path), "-version"], capture_output=True, text=True,
                              timeout=timeout, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Java probe failed for %s: %s", path, exc)
        return None
    if proc.returncode != 0:
        logger.debug("Java probe for %s exited with %s", path, proc.returncode)
        return None
    output = (proc.stderr or "") + "\n" + (proc.stdout or "")
    parsed = parse_java_version_output(output)
    if parsed is None:
        return None
    version, major = parsed
    arch = "x86_64" if "64-Bit" in output else None
    return JavaRuntime(path=path, major=major, version=version, arch=arch, source=source)


def _platform_java_dirs() -> List[Path]:
    os_name = current_os_name()
    if os_name == "windows":
        roots = [os.environ.get("ProgramFiles", r"C:\Program Files"),
                 os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")]
        vendors = ("Java", "Eclipse Adoptium", "Eclipse Foundation", "Microsoft", "Zulu", "BellSoft",
                   "Amazon Corretto")
        return [Path(r) / v for r in roots if r for v in vendors]
    if os_name == "osx":
        return [Path("/Library/Java/JavaVirtualMachines"),
                Path.home() / "Library" / "Java" / "JavaVirtualMachines"]
    return [Path("/usr/lib/jvm"), Path("/usr/java"), Path("/opt/java"), Path("/opt/jdk"),
            Path.home() / ".sdkman" / "candidates" / "java", Path.home() / ".jdks"]


def _java_in_home(home: Path) -> Optional[Path]:
    exe = java_executable_name()
    for candidate in (home / "bin" / exe, home / "Contents" / "Home" / "bin" / exe,
                      home / "jre" / "bin" / exe):
        if candidate.is_file():
            return candidate
    return None


def discover_java_candidates(extra_homes: Iterable[Path] = ()) -> List[Path]:
    """Candidate java binaries, de-duplicated, most specific sources first."""
    found: List[Path] = []

    def _add(p: Optional[Path]) -> None:
        if p is None:
            return
        key = os.path.normcase(os.path.abspath(p))
        if key not in seen:
            seen.add(key)
            found.append(Path(p))

    seen: Set[str] = set()
    for home in extra_homes:
        _add(_java_in_home(Path(home)))
    java_home = os.environ.get("JAVA_HOME")
    if java_home:
        _add(_java_in_home(Path(java_home)))
    on_path = shutil.which("java")
    if on_path:
        _add(Path(on_path))
    for base in _platform_java_dirs():
        if not base.is_dir():
            continue
        for child in sorted(glob.glob(str(base / "*"))):
            _add(_java_in_home(Path(child)))
    return found


def _safe_member_path(name: str, strip: int) -> Optional[PurePosixPath]:
    parts = PurePosixPath(name.replace("\\", "/")).parts
    if len(parts) <= strip:
        return None
    rel = PurePosixPath(*parts[strip:])
    if rel.is_absolute() or ".." in rel.parts:
        raise FileOperationError(f"Unsafe path in archive: {name}")
    return rel


def _common_root(names: List[str]) -> int:
    """1 when every member lives under one top-level folder, else 0."""
    tops = {PurePosixPath(n.replace("\\", "/")).parts[0] for n in names if n.strip("/")}
    return 1 if len(tops) == 1 and any("/" in n.strip("/") for n in names) else 0


def unpack_runtime_archive(archive: Path, dest: Path) -> Path:
    """
    Unpack a zip or tar.gz Java distribution into `dest`, stripping the
    archive's single root folder. The tree is built next to `dest` and
    swapped in at the end.

    Raises
    ------
    FileOperationError
        Unsupported format, unsafe member path, or I/O failure.
    """
    archive = Path(archive)
    dest = Path(dest)
    staging = dest.with_name(dest.name + ".unpacking")
    safe_remove(staging)
    staging.mkdir(parents=True)
    name = archive.name.lower()
    try:
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                members = zf.infolist()
                strip = _common_root([m.filename for m in members])
                for member in members:
                    rel = _safe_member_path(member.filename, strip)
                    if rel is None or member.is_dir():
                        continue
                    target = staging.joinpath(*rel.parts)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(member) as src, open(target, "wb") as out:
                        shutil.copyfileobj(src, out)
                    mode = (member.external_attr >> 16) & 0o777
                    if mode:
                        os.chmod(target, mode)
        elif name.endswith((".tar.gz", ".tgz")):
            with tarfile.open(archive, "r:gz") as tf:
                members = tf.getmembers()
                strip = _common_root([m.name for m in members])
                for member in members:
                    rel = _safe_member_path(member.name, strip)
                    if rel is None:
                        continue
                    target = staging.joinpath(*rel.parts)
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                    elif member.issym():
                        target.parent.mkdir(parents=True, exist_ok=True)
                        if Path(member.linkname).is_absolute() or ".." in PurePosixPath(member.linkname).parts[:-1]:
                            continue
                        os.symlink(member.linkname, target)
                    elif member.isfile():
                        target.parent.mkdir(parents=True, exist_ok=True)
                        src = tf.extractfile(member)
                        if src is None:
                            continue
                        with src, open(target, "wb") as out:
                            shutil.copyfileobj(src, out)
                        os.chmod(target, member.mode & 0o777 or 0o644)
        else:
            raise FileOperationError(f"Unsupported runtime archive format: {archive.name}")
        safe_remove(dest)
        os.replace(staging, dest)
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as exc:
        safe_remove(staging)
        raise FileOperationError(f"Failed to unpack {archive.name}: {exc}",
                                 context={"path": str(dest)}) from exc
    except FileOperationError:
        safe_remove(staging)
        raise
    return dest


class JavaProvisioner:
    """
    Selects or installs the Java runtime for a launch.

    Modes
    -----
    custom   : exactly the configured binary (must satisfy the requirement)
    system   : best installed runtime, error if none
    embedded : runtime under ``<root>/runtime/java<N>``, downloaded when missing
    auto     : system if one satisfies the requirement, else embedded
    """

    def __init__(self, layout: LauncherLayout, client: MetadataClient, downloader: DownloadManager,
                 *, probe: Callable[..., Optional[JavaRuntime]] = probe_java):
        self.layout = layout
        self.client = client
        self.downloader = downloader
        self._probe = probe

    def resolve(self, required_major: int, mode: str = "auto", custom_path: Optional[str] = None) -> JavaRuntime:
        """
        Raises
        ------
        MissingMetadataFailure
            No suitable runtime found (system/custom) or available upstream.
        IntegrityFailure
            A provisioned runtime does not run or reports the wrong version.
        """
        mode = (mode or "auto").lower()
        if mode == "custom":
            runtime = self._probe(custom_path, source="custom") if custom_path else None
            if runtime is None:
                raise MissingMetadataFailure("Configured Java binary is not runnable",
                                             context={"path": custom_path},
                                             hint="Point java_path at a java executable or switch java mode to auto.")
            if not java_satisfies(runtime.major, required_major):
                raise MissingMetadataFailure(
                    f"Configured Java {runtime.major} cannot run this version (needs Java {required_major})",
                    context={"path": custom_path})
            return runtime
        if mode in ("auto", "system"):
            system = self.find_system(required_major)
            if system is not None:
                return system
            if mode == "system":
                raise MissingMetadataFailure(f"No installed Java {required_major} found",
                                             hint="Install a matching JDK/JRE or use java mode auto.")
        embedded = self.find_embedded(required_major)
        if embedded is not None:
            return embedded
        return self.provision_embedded(required_major)

    def find_system(self, required_major: int) -> Optional[JavaRuntime]:
        matches: List[JavaRuntime] = []
        for path in discover_java_candidates():
            runtime = self._probe(path)
            if runtime is not None and java_satisfies(runtime.major, required_major):
                matches.append(runtime)
        if not matches:
            return None
        # exact major first, then the closest newer one
        matches.sort(key=lambda r: (r.major != required_major, r.major))
        chosen = matches[0]
        logger.info("Using system Java %s at %s", chosen.version, chosen.path)
        return chosen

    def find_embedded(self, required_major: int) -> Optional[JavaRuntime]:
        java = _java_in_home(self.layout.runtime_home(required_major))
        if java is None:
            return None
        runtime = self._probe(java, source="embedded")
        if runtime is not None and runtime.major == required_major:
            return runtime
        logger.warning("Embedded runtime at %s is unusable; it will be reinstalled", java)
        return None

    def provision_embedded(self, required_major: int) -> JavaRuntime:
        """Download the latest Adoptium JRE for `required_major` and install it."""
        os_name = current_os_name()
        arch = {"x86_64": "x64", "arm64": "aarch64", "x86": "x32", "arm32": "arm"}.get(current_arch(), current_arch())
        url = adoptium_latest_url(required_major, os_name, arch)
        releases = self.client.get_json(url, what=f"Adoptium Java {required_major}")
        package = None
        for release in releases if isinstance(releases, list) else []:
            pkg = ((release or {}).get("binary") or {}).get("package") or {}
            if pkg.get("link"):
                package = pkg
                break
        if package is None:
            raise MissingMetadataFailure(f"No Adoptium Java {required_major} build for {os_name}/{arch}")

        archive = self.layout.downloads_dir / (package.get("name") or f"java{required_major}.archive")
        task = DownloadTask(urls=[package["link"]], destination=archive, size=package.get("size"),
                            kind="runtime", require_archive=archive.name.lower().endswith(".zip"),
                            label=archive.name)
        self.downloader.download(task)
        expected = (package.get("checksum") or "").lower()
        if expected and file_digest(archive, "sha256") != expected:
            safe_remove(archive)
            raise IntegrityFailure(f"Checksum mismatch for {archive.name}", context={"path": str(archive)})

        home = self.layout.runtime_home(required_major)
        logger.info("Installing Java %d runtime into %s", required_major, home)
        unpack_runtime_archive(archive, home)
        java = _java_in_home(home)
        if java is None:
            raise IntegrityFailure("Unpacked runtime has no java executable", context={"path": str(home)})
        if os.name != "nt":
            java.chmod(java.stat().st_mode | 0o111)
        runtime = self._probe(java, source="embedded")
        if runtime is None or runtime.major != required_major:
            found = runtime.major if runtime else "nothing"
            raise IntegrityFailure(f"Installed runtime reports Java {found}, expected {required_major}",
                                   context={"path": str(java)})
        safe_remove(archive)
        return runtime
