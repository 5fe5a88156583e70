"""
mcruntime.loaders
-----------------

Loader profile resolution and installation.

Fabric / Quilt
    The metadata API lists loader versions per game version; the profile JSON
    is fetched (exact version first, then the service's fallback), pinned to
    the vanilla base and written to ``versions/<id>/<id>.json``.

Forge / NeoForge
    The version comes from the promotions file (recommended, then latest) or
    from maven-metadata.xml. The installer jar is downloaded, the libraries of
    its install profile are prefetched, and it is run as a child process
    against a validated vanilla install, bounded by an absolute timeout. The
    resulting profile id is discovered on disk (exact name, then a relaxed
    match).

An installed profile that passes the evidence check (accepted main class and
the loader library) is reused without touching the network.
"""

from __future__ import annotations

import json
import time
import logging
import subprocess
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import *

from .client import MetadataClient
from .documents import normalize_loader_profile, profile_evidence_ok
from .download import DownloadManager
from .exceptions import IntegrityFailure, LoaderInstallFailure, MissingMetadataFailure, NetworkFailure
from .fileops import read_json, read_zip_entry, write_json_atomic
from .maven import (MavenCoordinate, default_repositories, library_artifact, parse_install_profile_libraries,
                    resolve_transitive_dependencies)
from .models import DownloadTask, JavaRuntime, LoaderKind, LoaderProfile
from .paths import LauncherLayout
from .routes import (fabric_like_loader_list_url, fabric_like_profile_urls, forge_like_installer_urls,
                     forge_like_metadata_urls, forge_promotions_urls, neoforge_uses_legacy_artifact)
from .utils import parse_version, utc_stamp
from .validator import validate_client_jar
from .versions import VersionResolver

logger = logging.getLogger(__name__)

AUTO_VERSIONS = ("", "latest", "recommended", "auto", "stable")

_UNSTABLE_MARKERS = ("alpha", "beta", "pre", "rc", "snapshot")

# Directory-name keyword of each loader's installed profiles.
_PROFILE_KEYWORDS = {
    LoaderKind.FABRIC: "fabric-loader",
    LoaderKind.QUILT: "quilt-loader",
    LoaderKind.FORGE: "forge",
    LoaderKind.NEOFORGE: "neoforge",
}


def is_auto_version(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in AUTO_VERSIONS


def _is_stable(version: str) -> bool:
    text = version.lower()
    return not any(marker in text for marker in _UNSTABLE_MARKERS)


def _version_key(version: str) -> Tuple[int, Any]:
    parsed = parse_version(version)
    return (1, parsed) if parsed is not None else (0, version)


def parse_maven_metadata_versions(text: str) -> List[str]:
    """``<versioning><versions><version>`` entries of a maven-metadata.xml, in file order."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"invalid maven-metadata.xml: {exc}") from exc
    return [el.text.strip() for el in root.iter("version") if el.text and el.text.strip()]


def neoforge_version_prefix(mc_version: str) -> str:
    """
    NeoForge numbers releases after the game version without its leading
    "1.": 1.20.4 -> "20.4.", 1.21 -> "21.0.".
    """
    parts = mc_version.split(".")
    if len(parts) < 2 or parts[0] != "1":
        return mc_version + "."
    minor = parts[1]
    patch = parts[2] if len(parts) > 2 else "0"
    return f"{minor}.{patch}."


def forge_full_version(mc_version: str, loader_version: str) -> str:
    """Installer artifact version: "<mc>-<forge>" unless already prefixed."""
    if loader_version.startswith(mc_version + "-"):
        return loader_version
    return f"{mc_version}-{loader_version}"


def expected_profile_id(kind: LoaderKind, mc_version: str, loader_version: str) -> str:
    if kind is LoaderKind.FABRIC:
        return f"fabric-loader-{loader_version}-{mc_version}"
    if kind is LoaderKind.QUILT:
        return f"quilt-loader-{loader_version}-{mc_version}"
    if kind is LoaderKind.FORGE:
        short = loader_version[len(mc_version) + 1:] if loader_version.startswith(mc_version + "-") else loader_version
        return f"{mc_version}-forge-{short}"
    if kind is LoaderKind.NEOFORGE:
        if neoforge_uses_legacy_artifact(mc_version):
            short = loader_version[len(mc_version) + 1:] if loader_version.startswith(mc_version + "-") \
                else loader_version
            return f"{mc_version}-forge-{short}"
        return f"neoforge-{loader_version}"
    raise ValueError("vanilla has no loader profile")


class LoaderResolver:
    """
    Parameters
    ----------
    layout : LauncherLayout
        Shared launcher directories (profiles go to ``versions/``).
    client : MetadataClient
        Loader metadata APIs, maven-metadata, POMs.
    downloader : DownloadManager
        Installer jars and prefetched libraries.
    versions : VersionResolver
        Vanilla documents and client jars.
    installer_timeout : float
        Absolute wall-clock bound of one installer run (seconds).
    poll_interval : float
        Sleep between installer exit polls.
    min_client_jar_bytes : int
        Threshold of the vanilla preflight.
    """

    def __init__(self,
                 layout: LauncherLayout,
                 client: MetadataClient,
                 downloader: DownloadManager,
                 versions: VersionResolver,
                 *,
                 installer_timeout: float = 600.0,
                 poll_interval: float = 0.25,
                 min_client_jar_bytes: int = 512 * 1024,
                 popen: Callable[..., Any] = subprocess.Popen,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.layout = layout
        self.client = client
        self.downloader = downloader
        self.versions = versions
        self.installer_timeout = float(installer_timeout)
        self.poll_interval = float(poll_interval)
        self.min_client_jar_bytes = min_client_jar_bytes
        self._popen = popen
        self._sleep = sleep
        self._clock = clock

    # version selection
    def resolve_loader_version(self, kind: LoaderKind, mc_version: str, requested: Optional[str] = None) -> str:
        """
        Concrete loader version for `mc_version`.

        Raises
        ------
        MissingMetadataFailure
            No loader build exists for the game version (or the requested one
            is not listed).
        """
        if kind.is_fabric_like:
            return self._fabric_like_version(kind, mc_version, requested)
        if kind is LoaderKind.FORGE:
            return self._forge_version(mc_version, requested)
        if kind is LoaderKind.NEOFORGE:
            return self._neoforge_version(mc_version, requested)
        raise ValueError("vanilla has no loader version")

    def _fabric_like_version(self, kind: LoaderKind, mc_version: str, requested: Optional[str]) -> str:
        entries = self.client.get_json(fabric_like_loader_list_url(kind, mc_version), cache=True,
                                       what=f"{kind.value} loaders for {mc_version}")
        versions: List[Tuple[str, bool]] = []
        for entry in entries or []:
            loader = entry.get("loader") if isinstance(entry, dict) else None
            if isinstance(loader, dict) and loader.get("version"):
                v = str(loader["version"])
                versions.append((v, bool(loader.get("stable", _is_stable(v)))))
        if not versions:
            raise MissingMetadataFailure(f"No {kind.value} loader available for Minecraft {mc_version}",
                                         context={"version": mc_version})
        if not is_auto_version(requested):
            if any(v == requested for v, _ in versions):
                return str(requested)
            raise MissingMetadataFailure(f"{kind.value} loader {requested} is not available for {mc_version}",
                                         context={"version": mc_version, "loader_version": requested})
        for v, stable in versions:
            if stable:
                return v
        return versions[0][0]

    def _maven_versions(self, kind: LoaderKind, mc_version: str) -> List[str]:
        text = self.client.get_text(forge_like_metadata_urls(kind, mc_version), cache=True,
                                    what=f"{kind.value} maven metadata")
        try:
            return parse_maven_metadata_versions(text)
        except ValueError as exc:
            raise MissingMetadataFailure(f"Unreadable {kind.value} maven metadata: {exc}") from exc

    def _forge_version(self, mc_version: str, requested: Optional[str]) -> str:
        if not is_auto_version(requested):
            return forge_full_version(mc_version, str(requested))[len(mc_version) + 1:]
        promos = self.client.get_json(forge_promotions_urls(), cache=True, what="forge promotions")
        promos = (promos or {}).get("promos") or {}
        for key in (f"{mc_version}-recommended", f"{mc_version}-latest"):
            if promos.get(key):
                return str(promos[key])
        prefix = f"{mc_version}-"
        candidates = [v[len(prefix):] for v in self._maven_versions(LoaderKind.FORGE, mc_version)
                      if v.startswith(prefix)]
        if not candidates:
            raise MissingMetadataFailure(f"No Forge build for Minecraft {mc_version}",
                                         context={"version": mc_version})
        return max(candidates, key=_version_key)

    def _neoforge_version(self, mc_version: str, requested: Optional[str]) -> str:
        if not is_auto_version(requested):
            return str(requested)
        if neoforge_uses_legacy_artifact(mc_version):
            prefix = f"{mc_version}-"
            candidates = [v for v in self._maven_versions(LoaderKind.NEOFORGE, mc_version) if v.startswith(prefix)]
        else:
            prefix = neoforge_version_prefix(mc_version)
            candidates = [v for v in self._maven_versions(LoaderKind.NEOFORGE, mc_version) if v.startswith(prefix)]
        if not candidates:
            raise MissingMetadataFailure(f"No NeoForge build for Minecraft {mc_version}",
                                         context={"version": mc_version})
        stable = [v for v in candidates if _is_stable(v)]
        return max(stable or candidates, key=_version_key)

    # installed profiles
    def _read_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        doc = read_json(self.layout.version_json_path(profile_id))
        return doc if isinstance(doc, dict) else None

    def find_installed_profile(self, kind: LoaderKind, mc_version: str,
                               loader_version: Optional[str] = None) -> Optional[LoaderProfile]:
        """
        Installed profile passing the evidence check: the exact expected id
        first, then any ``versions/`` entry whose name carries the loader
        keyword (and the loader version, when given) and inherits from
        `mc_version`. Newest wins among relaxed matches.
        """
        if loader_version:
            pid = expected_profile_id(kind, mc_version, loader_version)
            doc = self._read_profile(pid)
            if doc is not None and profile_evidence_ok(doc, kind, loader_version):
                return LoaderProfile(kind, pid, loader_version, mc_version, doc, self.layout.version_json_path(pid))

        if not self.layout.versions_dir.is_dir():
            return None
        keyword = _PROFILE_KEYWORDS[kind]
        matches: List[Tuple[float, str, Dict[str, Any]]] = []
        for entry in self.layout.versions_dir.iterdir():
            name = entry.name
            lname = name.lower()
            if not entry.is_dir() or keyword not in lname or (loader_version and loader_version not in name):
                continue
            if kind is LoaderKind.FORGE and "neoforge" in lname:
                continue
            doc = self._read_profile(name)
            if doc is None or doc.get("inheritsFrom") != mc_version:
                continue
            if not profile_evidence_ok(doc, kind, loader_version):
                continue
            matches.append((self.layout.version_json_path(name).stat().st_mtime, name, doc))
        if not matches:
            return None
        _, pid, doc = max(matches, key=lambda m: m[0])
        return LoaderProfile(kind, pid, loader_version or _loader_version_from_id(kind, pid, mc_version),
                             mc_version, doc, self.layout.version_json_path(pid))

    def _store_normalized(self, profile: LoaderProfile) -> LoaderProfile:
        doc = normalize_loader_profile(profile.document, profile.parent_version, profile.loader)
        if doc != profile.document:
            write_json_atomic(self.layout.version_json_path(profile.profile_id), doc)
        profile.document = doc
        profile.path = self.layout.version_json_path(profile.profile_id)
        return profile

    def ensure_profile(self, kind: LoaderKind, mc_version: str, requested: Optional[str] = None,
                       *, java: Optional[JavaRuntime] = None, force: bool = False) -> LoaderProfile:
        """
        Make a profile for `kind` on `mc_version` available and return it.

        Parameters
        ----------
        requested : Optional[str]
            Loader version, or None/"latest" for automatic selection.
        java : Optional[JavaRuntime]
            Runtime used to execute Forge/NeoForge installers.
        force : bool
            Ignore an installed profile and install again.

        Raises
        ------
        MissingMetadataFailure, NetworkFailure, LoaderInstallFailure
        """
        if kind is LoaderKind.VANILLA:
            raise ValueError("vanilla has no loader profile")
        wanted = None if is_auto_version(requested) else str(requested)
        if kind is LoaderKind.FORGE and wanted:
            wanted = forge_full_version(mc_version, wanted)[len(mc_version) + 1:]
        if not force:
            installed = self.find_installed_profile(kind, mc_version, wanted)
            if installed is not None:
                logger.info("Reusing installed %s profile %s", kind.value, installed.profile_id)
                return self._store_normalized(installed)

        loader_version = self.resolve_loader_version(kind, mc_version, requested)
        if kind.is_fabric_like:
            profile = self.install_fabric_like(kind, mc_version, loader_version)
        else:
            if java is None:
                raise LoaderInstallFailure(f"A Java runtime is required to run the {kind.value} installer")
            profile = self.run_installer(kind, mc_version, loader_version, java)
        return self._store_normalized(profile)

    # fabric / quilt
    def install_fabric_like(self, kind: LoaderKind, mc_version: str, loader_version: str) -> LoaderProfile:
        profile = self.client.get_json(fabric_like_profile_urls(kind, mc_version, loader_version),
                                       what=f"{kind.value} profile {loader_version} for {mc_version}")
        if not isinstance(profile, dict) or not profile.get("id"):
            raise MissingMetadataFailure(f"{kind.value} profile for {mc_version} has no id")
        pid = str(profile["id"])
        actual = _loader_version_from_id(kind, pid, mc_version) or loader_version
        if actual != loader_version:
            logger.warning("%s %s unavailable; using %s", kind.value, loader_version, actual)
        doc = normalize_loader_profile(profile, mc_version, kind)
        write_json_atomic(self.layout.version_json_path(pid), doc)
        logger.info("Installed %s profile %s", kind.value, pid)
        return LoaderProfile(kind, pid, actual, mc_version, doc, self.layout.version_json_path(pid))

    # forge / neoforge
    def _prepare_vanilla(self, mc_version: str) -> None:
        """Installers patch the vanilla jar: it must exist and verify first."""
        doc = self.versions.ensure_version_document(mc_version)
        task = self.versions.client_jar_task(doc, mc_version)
        self.downloader.download(task)
        jv = validate_client_jar(task.destination, task.sha1, self.min_client_jar_bytes)
        if not jv.ok:
            raise IntegrityFailure(f"Vanilla client {mc_version} failed preflight: {jv.reason}",
                                   context={"path": str(task.destination)})
        profiles = self.layout.root / "launcher_profiles.json"
        if not profiles.is_file():
            write_json_atomic(profiles, {"profiles": {}, "selectedProfile": "", "clientToken": "",
                                         "launcherVersion": {"name": "mcruntime", "format": 21}})

    def _fetch_optional_text(self, urls: List[str]) -> Optional[str]:
        try:
            return self.client.get_text_optional(urls)
        except NetworkFailure as exc:
            logger.debug("POM lookup failed: %s", exc)
            return None

    def prefetch_installer_libraries(self, installer: Path) -> int:
        """
        Download what the installer would fetch itself (faster, mirrored,
        cached). Best effort: failures are logged and left to the installer.
        Returns the number of tasks attempted.
        """
        libraries: List[Dict[str, Any]] = []
        for entry in ("install_profile.json", "version.json"):
            raw = read_zip_entry(installer, entry)
            if raw is None:
                continue
            try:
                doc = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.warning("Unreadable %s in %s: %s", entry, installer.name, exc)
                continue
            if isinstance(doc, dict):
                libraries += parse_install_profile_libraries(doc)

        tasks: List[DownloadTask] = []
        name_only: List[MavenCoordinate] = []
        for lib in libraries:
            has_artifact = isinstance((lib.get("downloads") or {}).get("artifact"), dict)
            artifact = library_artifact(lib, self.layout.libraries_dir)
            if artifact is None or not artifact.urls or artifact.path.is_file():
                continue
            if has_artifact:
                tasks.append(DownloadTask(urls=artifact.urls, destination=artifact.path, sha1=artifact.sha1,
                                          size=artifact.size, kind="library", label=artifact.name))
            else:
                try:
                    name_only.append(MavenCoordinate.parse(lib["name"]))
                except (KeyError, ValueError):
                    continue
        if name_only:
            for coord in resolve_transitive_dependencies(self._fetch_optional_text, name_only,
                                                         default_repositories()):
                if coord.extension != "jar" or coord.path_in(self.layout.libraries_dir).is_file():
                    continue
                artifact = library_artifact({"name": str(coord)}, self.layout.libraries_dir)
                if artifact is not None and artifact.urls:
                    tasks.append(DownloadTask(urls=artifact.urls, destination=artifact.path, kind="library",
                                              label=artifact.name, retries=1))
        if not tasks:
            return 0
        try:
            self.downloader.download_many(tasks, label="installer libraries")
        except (NetworkFailure, IntegrityFailure) as exc:
            logger.warning("Installer library prefetch incomplete; the installer will retry: %s", exc)
        return len(tasks)

    def installer_command(self, kind: LoaderKind, java: JavaRuntime, installer: Path) -> List[str]:
        return [str(java.path), "-jar", str(installer), "--installClient", str(self.layout.root)]

    def run_installer(self, kind: LoaderKind, mc_version: str, loader_version: str,
                      java: JavaRuntime) -> LoaderProfile:
        """
        Download and execute the Forge/NeoForge installer.

        Raises
        ------
        LoaderInstallFailure
            The process could not start, exited non-zero, timed out (it is
            killed), or left no discoverable profile behind.
        """
        self._prepare_vanilla(mc_version)
        if kind is LoaderKind.FORGE or neoforge_uses_legacy_artifact(mc_version):
            full = forge_full_version(mc_version, loader_version)
        else:
            full = loader_version
        installer = self.layout.downloads_dir / f"{kind.value}-{full}-installer.jar"
        self.downloader.download(DownloadTask(urls=forge_like_installer_urls(kind, full), destination=installer,
                                              kind="installer", require_archive=True,
                                              label=installer.name))
        self.prefetch_installer_libraries(installer)

        log_path = self.layout.logs_dir / f"installer-{kind.value}-{full}-{utc_stamp()}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.installer_command(kind, java, installer)
        logger.info("Running %s installer %s", kind.value, full)
        ctx = {"loader": kind.value, "version": full, "log": str(log_path)}
        with open(log_path, "wb") as log:
            try:
                proc = self._popen(cmd, stdout=log, stderr=subprocess.STDOUT, stdin=subprocess.DEVNULL,
                                   cwd=str(self.layout.downloads_dir))
            except OSError as exc:
                raise LoaderInstallFailure(f"Could not start the {kind.value} installer: {exc}",
                                           context=ctx) from exc
            deadline = self._clock() + self.installer_timeout
            while proc.poll() is None:
                if self._clock() >= deadline:
                    proc.kill()
                    proc.wait()
                    raise LoaderInstallFailure(f"{kind.value} installer timed out after "
                                               f"{self.installer_timeout:.0f}s", context=ctx,
                                               hint="Check the installer log; a slow mirror is the usual cause.")
                self._sleep(self.poll_interval)
        if proc.returncode != 0:
            raise LoaderInstallFailure(f"{kind.value} installer exited with code {proc.returncode}",
                                       proc.returncode, context=ctx, hint="See the installer log for details.")

        profile = self.find_installed_profile(kind, mc_version, loader_version)
        if profile is None:
            profile = self.find_installed_profile(kind, mc_version)
        if profile is None:
            raise LoaderInstallFailure(f"{kind.value} installer finished but no profile for {full} was found",
                                       context=ctx)
        logger.info("Installed %s profile %s", kind.value, profile.profile_id)
        return profile


def _loader_version_from_id(kind: LoaderKind, profile_id: str, mc_version: str) -> Optional[str]:
    """Loader version embedded in a profile id, when the naming scheme is known."""
    if kind.is_fabric_like:
        prefix = _PROFILE_KEYWORDS[kind] + "-"
        suffix = "-" + mc_version
        if profile_id.startswith(prefix) and profile_id.endswith(suffix):
            return profile_id[len(prefix):-len(suffix)]
        return None
    for marker in (f"{mc_version}-forge-", "neoforge-"):
        if profile_id.startswith(marker):
            return profile_id[len(marker):]
    return None
