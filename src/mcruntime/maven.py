"""
mcruntime.maven
---------------

Maven coordinate handling and library resolution for version documents.

- MavenCoordinate: ``group:artifact:version[:classifier][@ext]`` -> relative path / URLs
- repositories_for_library: ordered repository list for one library entry
- library_allowed / rules_allow: the OS/feature rule chain (last matching rule wins)
- library_artifact / library_native: where a library lives on disk and where to fetch it
- parse_install_profile_libraries: libraries an installer profile needs
- resolve_transitive_dependencies: breadth-first POM walk with exclusions
"""

from __future__ import annotations

import logging
import platform
import re
import struct
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import *

from .paths import current_os_name
from .routes import FABRIC, FORGE, MAVEN, MOJANG, NEOFORGE, QUILT, mirror_candidates_for_url

logger = logging.getLogger(__name__)

_ARCHIVE_EXTENSIONS = ("jar", "zip", "pom", "tar.gz", "tgz", "exe")


@dataclass(frozen=True)
class MavenCoordinate:
    group: str
    artifact: str
    version: str
    classifier: Optional[str] = None
    extension: str = "jar"

    @classmethod
    def parse(cls, name: str) -> "MavenCoordinate":
        """
        Parse a Maven coordinate.

        Accepted forms: ``g:a:v``, ``g:a:v:classifier``, ``g:a:v@ext``,
        ``g:a:v:classifier@ext``, ``g:a:v:classifier:ext``. A fourth part that
        is a known extension (jar/zip/pom) is treated as the extension.

        Raises
        ------
        ValueError
            If the coordinate has fewer than three non-empty parts.
        """
        text = (name or "").strip()
        text, _, ext = text.partition("@")
        parts = text.split(":")
        if len(parts) < 3 or not all(parts[:3]):
            raise ValueError(f"Invalid maven coordinate: {name!r}")
        group, artifact, version = parts[0], parts[1], parts[2]
        classifier: Optional[str] = None
        extension = ext or "jar"
        if len(parts) == 4:
            if not ext and parts[3] in _ARCHIVE_EXTENSIONS:
                extension = parts[3]
            else:
                classifier = parts[3] or None
        elif len(parts) >= 5:
            classifier = parts[3] or None
            if not ext:
                extension = parts[4] or "jar"
        return cls(group, artifact, version, classifier, extension)

    @property
    def file_name(self) -> str:
        suffix = f"-{self.classifier}" if self.classifier else ""
        return f"{self.artifact}-{self.version}{suffix}.{self.extension}"

    @property
    def rel_path(self) -> str:
        """Repository-relative path with forward slashes."""
        return f"{self.group.replace('.', '/')}/{self.artifact}/{self.version}/{self.file_name}"

    @property
    def pom_rel_path(self) -> str:
        return f"{self.group.replace('.', '/')}/{self.artifact}/{self.version}/{self.artifact}-{self.version}.pom"

    @property
    def key_without_version(self) -> str:
        """``group:artifact[:classifier]`` - identity used to override library versions."""
        return ":".join(p for p in (self.group, self.artifact, self.classifier) if p)

    @property
    def key_without_ext(self) -> str:
        return ":".join(p for p in (self.group, self.artifact, self.version, self.classifier) if p)

    def with_classifier(self, classifier: Optional[str]) -> "MavenCoordinate":
        return MavenCoordinate(self.group, self.artifact, self.version, classifier, self.extension)

    def path_in(self, root: Path) -> Path:
        return Path(root).joinpath(*self.rel_path.split("/"))

    def url(self, repository: str) -> str:
        return f"{repository.rstrip('/')}/{self.rel_path}"

    def urls(self, repositories: Iterable[str]) -> List[str]:
        return [self.url(r) for r in repositories]

    def __str__(self) -> str:
        text = self.key_without_ext
        if self.extension != "jar":
            text += f"@{self.extension}"
        return text


# Repository selection
_OFFICIAL_REPOSITORIES: Tuple[Tuple[str, str], ...] = (
    ("com.mojang", MOJANG.LIBRARIES),
    ("net.minecraft", MOJANG.LIBRARIES),
    ("net.fabricmc", FABRIC.MAVEN),
    ("org.quiltmc", QUILT.MAVEN),
    ("net.minecraftforge", FORGE.MAVEN),
    ("net.neoforged", NEOFORGE.MAVEN),
    ("cpw.mods", NEOFORGE.MAVEN),
    ("org.jetbrains", MAVEN.CENTRAL),
)

_EXPERIMENTAL_REPOSITORIES = (
    "https://maven.pkg.jetbrains.space/kotlin/p/kotlin/dev",
    "https://maven.pkg.jetbrains.space/kotlin/p/kotlin/eap",
    "https://maven.pkg.jetbrains.space/kotlin/p/kotlin/bootstrap",
)


def official_repository_for_group(group: str) -> Optional[str]:
    for prefix, repo in _OFFICIAL_REPOSITORIES:
        if group == prefix or group.startswith(prefix + "."):
            return repo
    return None


def default_repositories() -> List[str]:
    return [
        MOJANG.LIBRARIES,
        MAVEN.REPO1,
        MAVEN.JETBRAINS,
        FORGE.MAVEN,
        NEOFORGE.MAVEN,
        FABRIC.MAVEN,
        QUILT.MAVEN,
        MAVEN.CENTRAL,
    ]


def _norm_repo(url: str) -> str:
    return url.strip().rstrip("/")


def repositories_for_library(library: Dict[str, Any], declared: Optional[Iterable[str]] = None) -> List[str]:
    """
    Ordered repositories for a library entry.

    The library's own ``url`` goes first, then the official repository of its
    group, then `declared`. With nothing known, the default list is used.
    Experimental JetBrains repositories are only kept when the library itself
    points at one.
    """
    own = _norm_repo(library.get("url") or "") or None
    repos: List[str] = []
    if own:
        repos.append(own)
    try:
        group = MavenCoordinate.parse(library.get("name", "")).group
    except ValueError:
        group = ""
    official = official_repository_for_group(group) if group else None
    if official:
        repos.append(official)
    for r in declared or ():
        r = _norm_repo(r)
        if r in _EXPERIMENTAL_REPOSITORIES and r != own:
            continue
        repos.append(r)
    if not repos:
        repos = default_repositories()
    seen = set()
    return [r for r in repos if not (r in seen or seen.add(r))]


# Rules
def current_arch() -> str:
    machine = platform.machine().lower()
    if machine in ("amd64", "x86_64", "x64"):
        return "x86_64"
    if machine in ("arm64", "aarch64"):
        return "arm64"
    if machine in ("i386", "i686", "x86"):
        return "x86"
    if machine.startswith("arm"):
        return "arm32"
    return machine


def arch_bits() -> str:
    return "64" if struct.calcsize("P") == 8 else "32"


def _rule_matches(rule: Dict[str, Any], os_name: str, arch: str,
                  features: Mapping[str, bool], os_version: Optional[str]) -> bool:
    os_rule = rule.get("os")
    if isinstance(os_rule, dict):
        name = os_rule.get("name")
        if name and name != os_name:
            return False
        rule_arch = os_rule.get("arch")
        if rule_arch and rule_arch != arch:
            # "x86" in Mojang rules means a 32-bit JVM
            if not (rule_arch == "x86" and arch_bits() == "32"):
                return False
        pattern = os_rule.get("version")
        if pattern and os_version is not None:
            try:
                if not re.search(pattern, os_version):
                    return False
            except re.error:
                return False
    rule_features = rule.get("features")
    if isinstance(rule_features, dict):
        for key, expected in rule_features.items():
            if bool(features.get(key, False)) != bool(expected):
                return False
    return True


def rules_allow(rules: Optional[Iterable[Dict[str, Any]]],
                os_name: Optional[str] = None,
                *,
                arch: Optional[str] = None,
                features: Optional[Mapping[str, bool]] = None,
                os_version: Optional[str] = None) -> bool:
    """
    Evaluate a rule chain.

    No rules means allowed. Otherwise the result starts as disallowed and each
    matching rule sets it to ``action == "allow"``; the last match wins.
    """
    rules = list(rules or [])
    if not rules:
        return True
    os_name = os_name or current_os_name()
    arch = arch or current_arch()
    features = features or {}
    if os_version is None:
        os_version = platform.release()
    allowed = False
    for rule in rules:
        if _rule_matches(rule, os_name, arch, features, os_version):
            allowed = rule.get("action", "allow") == "allow"
    return allowed


def library_allowed(library: Dict[str, Any], os_name: Optional[str] = None, **kwargs) -> bool:
    return rules_allow(library.get("rules"), os_name, **kwargs)


# Library artifacts
@dataclass
class LibraryArtifact:
    """
    Where one library file lives and how to get it.

    ``urls`` may be empty for artifacts produced locally by loader installers
    (e.g. patched Forge client jars); those can only be verified, not fetched.
    """
    name: str
    path: Path
    urls: List[str] = field(default_factory=list)
    sha1: Optional[str] = None
    size: Optional[int] = None
    extract_exclude: List[str] = field(default_factory=list)


def _expand_urls(primary: Optional[str], coord: Optional[MavenCoordinate], repositories: List[str]) -> List[str]:
    urls: List[str] = []
    if primary:
        urls += mirror_candidates_for_url(primary)
    if coord is not None:
        for u in coord.urls(repositories):
            urls += mirror_candidates_for_url(u)
    seen = set()
    return [u for u in urls if not (u in seen or seen.add(u))]


def library_artifact(library: Dict[str, Any], libraries_dir: Path,
                     declared_repositories: Optional[Iterable[str]] = None) -> Optional[LibraryArtifact]:
    """
    Main artifact of a library entry, or None for natives-only entries
    (legacy LWJGL platform entries with a ``natives`` map and no artifact).
    """
    name = library.get("name", "")
    try:
        coord: Optional[MavenCoordinate] = MavenCoordinate.parse(name)
    except ValueError:
        coord = None
    downloads = library.get("downloads") if isinstance(library.get("downloads"), dict) else {}
    artifact = downloads.get("artifact") if isinstance(downloads.get("artifact"), dict) else None

    if artifact is None and library.get("natives") and downloads.get("classifiers"):
        return None

    if artifact is not None:
        rel = artifact.get("path") or (coord.rel_path if coord else None)
        if not rel:
            logger.debug("Library %r has neither path nor coordinate", name)
            return None
        url = artifact.get("url") or None
        if url:
            urls = _expand_urls(url, None, [])
        else:
            urls = []
        return LibraryArtifact(name=name, path=Path(libraries_dir).joinpath(*rel.split("/")),
                               urls=urls, sha1=artifact.get("sha1"), size=artifact.get("size"))

    if coord is None:
        logger.debug("Skipping library without usable coordinate: %r", name)
        return None
    repos = repositories_for_library(library, declared_repositories)
    return LibraryArtifact(name=name, path=coord.path_in(libraries_dir),
                           urls=_expand_urls(None, coord, repos),
                           sha1=library.get("sha1"), size=library.get("size"))


def library_native(library: Dict[str, Any], libraries_dir: Path,
                   os_name: Optional[str] = None) -> Optional[LibraryArtifact]:
    """
    Legacy natives artifact (``natives`` map + ``downloads.classifiers``) for
    the current OS, or None. ``${arch}`` in the classifier becomes 32/64.
    """
    natives = library.get("natives")
    if not isinstance(natives, dict):
        return None
    os_name = os_name or current_os_name()
    classifier = natives.get(os_name)
    if not classifier:
        return None
    classifier = classifier.replace("${arch}", arch_bits())
    exclude = list((library.get("extract") or {}).get("exclude") or [])
    downloads = library.get("downloads") if isinstance(library.get("downloads"), dict) else {}
    classifiers = downloads.get("classifiers") if isinstance(downloads.get("classifiers"), dict) else {}
    entry = classifiers.get(classifier)
    try:
        coord: Optional[MavenCoordinate] = MavenCoordinate.parse(library.get("name", "")).with_classifier(classifier)
    except ValueError:
        coord = None
    if isinstance(entry, dict):
        rel = entry.get("path") or (coord.rel_path if coord else None)
        if not rel:
            return None
        return LibraryArtifact(name=f"{library.get('name')}:{classifier}",
                               path=Path(libraries_dir).joinpath(*rel.split("/")),
                               urls=_expand_urls(entry.get("url"), None, []),
                               sha1=entry.get("sha1"), size=entry.get("size"), extract_exclude=exclude)
    if coord is None:
        return None
    return LibraryArtifact(name=str(coord), path=coord.path_in(libraries_dir),
                           urls=_expand_urls(None, coord, repositories_for_library(library)),
                           extract_exclude=exclude)


def library_identity(library: Dict[str, Any]) -> str:
    """Override key of a library entry (group:artifact[:classifier]) or its raw name."""
    name = library.get("name", "")
    try:
        return MavenCoordinate.parse(name).key_without_version
    except ValueError:
        return name


# Installer profiles
def parse_install_profile_libraries(install_profile: Dict[str, Any],
                                    os_name: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Libraries an installer profile needs: ``libraries``, the legacy
    ``versionInfo.libraries``, and every processor jar/classpath coordinate.
    De-duplicated by name or artifact path; OS-filtered.
    """
    collected: List[Dict[str, Any]] = []
    seen: Set[str] = set()

    def _add(lib: Dict[str, Any]) -> None:
        if not isinstance(lib, dict) or not library_allowed(lib, os_name):
            return
        artifact = (lib.get("downloads") or {}).get("artifact") or {}
        key = lib.get("name") or artifact.get("path")
        if not key or key in seen:
            return
        seen.add(key)
        collected.append(lib)

    for lib in install_profile.get("libraries") or []:
        _add(lib)
    version_info = install_profile.get("versionInfo")
    if isinstance(version_info, dict):
        for lib in version_info.get("libraries") or []:
            _add(lib)
    for proc in install_profile.get("processors") or []:
        if not isinstance(proc, dict):
            continue
        sides = proc.get("sides")
        if sides and "client" not in sides:
            continue
        for coord in [proc.get("jar"), *(proc.get("classpath") or [])]:
            if coord:
                _add({"name": coord})
    return collected


# POM resolution
_SKIPPED_SCOPES = {"test", "provided", "system", "import"}
_PROPERTY = re.compile(r"\$\{([^}]+)\}")


@dataclass
class PomDependency:
    group: str
    artifact: str
    version: Optional[str]
    scope: str = "compile"
    optional: bool = False
    classifier: Optional[str] = None
    type: str = "jar"
    exclusions: Set[str] = field(default_factory=set)

    @property
    def key(self) -> str:
        return f"{self.group}:{self.artifact}"


@dataclass
class ParsedPom:
    group: Optional[str]
    artifact: Optional[str]
    version: Optional[str]
    packaging: str = "jar"
    parent: Optional[MavenCoordinate] = None
    properties: Dict[str, str] = field(default_factory=dict)
    managed: Dict[str, str] = field(default_factory=dict)
    dependencies: List[PomDependency] = field(default_factory=list)


def _strip_ns(root: ET.Element) -> None:
    for el in root.iter():
        if isinstance(el.tag, str) and "}" in el.tag:
            el.tag = el.tag.split("}", 1)[1]


def _text(el: Optional[ET.Element], tag: str) -> Optional[str]:
    if el is None:
        return None
    child = el.find(tag)
    if child is None:
        return None
    value = "".join(child.itertext()).strip()
    return value or None


def substitute_properties(value: Optional[str], properties: Mapping[str, str]) -> Optional[str]:
    """Replace ``${name}`` references (repeatedly, up to a small depth)."""
    if value is None:
        return None
    for _ in range(5):
        new = _PROPERTY.sub(lambda m: properties.get(m.group(1), m.group(0)), value)
        if new == value:
            break
        value = new
    return value


def _parse_dependency(el: ET.Element) -> Optional[PomDependency]:
    group = _text(el, "groupId")
    artifact = _text(el, "artifactId")
    if not group or not artifact:
        return None
    exclusions = set()
    excl_root = el.find("exclusions")
    if excl_root is not None:
        for ex in excl_root.findall("exclusion"):
            eg, ea = _text(ex, "groupId"), _text(ex, "artifactId")
            if eg and ea:
                exclusions.add(f"{eg}:{ea}")
    return PomDependency(
        group=group,
        artifact=artifact,
        version=_text(el, "version"),
        scope=(_text(el, "scope") or "compile").lower(),
        optional=(_text(el, "optional") or "false").lower() == "true",
        classifier=_text(el, "classifier"),
        type=_text(el, "type") or "jar",
        exclusions=exclusions,
    )


def parse_pom(text: str) -> ParsedPom:
    """
    Parse a POM document.

    Raises
    ------
    ValueError
        If the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"Malformed POM: {exc}") from exc
    _strip_ns(root)

    parent_el = root.find("parent")
    parent = None
    if parent_el is not None:
        pg, pa, pv = _text(parent_el, "groupId"), _text(parent_el, "artifactId"), _text(parent_el, "version")
        if pg and pa and pv:
            parent = MavenCoordinate(pg, pa, pv, None, "pom")

    group = _text(root, "groupId") or (parent.group if parent else None)
    version = _text(root, "version") or (parent.version if parent else None)
    artifact = _text(root, "artifactId")

    properties: Dict[str, str] = {}
    props_el = root.find("properties")
    if props_el is not None:
        for child in props_el:
            if isinstance(child.tag, str):
                properties[child.tag] = "".join(child.itertext()).strip()
    for key, value in (("project.groupId", group), ("project.version", version),
                       ("project.artifactId", artifact), ("pom.version", version),
                       ("project.parent.version", parent.version if parent else None),
                       ("project.parent.groupId", parent.group if parent else None)):
        if value:
            properties.setdefault(key, value)

    pom = ParsedPom(group=group, artifact=artifact, version=version,
                    packaging=_text(root, "packaging") or "jar", parent=parent, properties=properties)

    mgmt = root.find("dependencyManagement/dependencies")
    if mgmt is not None:
        for el in mgmt.findall("dependency"):
            dep = _parse_dependency(el)
            if dep and dep.version:
                pom.managed[dep.key] = dep.version

    deps = root.find("dependencies")
    if deps is not None:
        for el in deps.findall("dependency"):
            dep = _parse_dependency(el)
            if dep:
                pom.dependencies.append(dep)
    return pom


def _load_pom_chain(fetch_text: Callable[[List[str]], Optional[str]],
                    coord: MavenCoordinate,
                    repositories: List[str],
                    cache: Dict[str, Optional[ParsedPom]],
                    max_parents: int = 4) -> Optional[ParsedPom]:
    """Fetch a POM and fold its parents' properties and managed versions into it."""
    key = coord.key_without_ext
    if key in cache:
        return cache[key]
    cache[key] = None  # guards against parent cycles
    text = fetch_text([f"{r}/{coord.pom_rel_path}" for r in repositories])
    if text is None:
        return None
    try:
        pom = parse_pom(text)
    except ValueError as exc:
        logger.warning("Ignoring unparsable POM for %s: %s", coord, exc)
        return None
    if pom.parent is not None and max_parents > 0:
        parent_pom = _load_pom_chain(fetch_text, pom.parent, repositories, cache, max_parents - 1)
        if parent_pom is not None:
            for k, v in parent_pom.properties.items():
                pom.properties.setdefault(k, v)
            for k, v in parent_pom.managed.items():
                pom.managed.setdefault(k, v)
    cache[key] = pom
    return pom


def resolve_transitive_dependencies(fetch_text: Callable[[List[str]], Optional[str]],
                                    roots: Iterable[MavenCoordinate],
                                    repositories: Iterable[str],
                                    *,
                                    max_artifacts: int = 512) -> List[MavenCoordinate]:
    """
    Breadth-first transitive resolution over POM files.

    Parameters
    ----------
    fetch_text : Callable[[List[str]], Optional[str]]
        Returns the body of the first candidate URL that answers, or None when
        none does (missing POMs end that branch, they are not an error).
    roots : Iterable[MavenCoordinate]
        Starting artifacts (included in the result).
    repositories : Iterable[str]
        Repositories to look POMs up in, in order.
    max_artifacts : int
        Hard bound on the result size.

    Returns
    -------
    List[MavenCoordinate]
        Roots first, then dependencies in discovery order; the first version
        seen for a group:artifact wins. test/provided/system/import scopes,
        optional dependencies and unresolved ``${...}`` versions are skipped.
    """
    repositories = [_norm_repo(r) for r in repositories]
    cache: Dict[str, Optional[ParsedPom]] = {}
    resolved: List[MavenCoordinate] = []
    seen: Set[str] = set()
    queue: Deque[Tuple[MavenCoordinate, FrozenSet[str]]] = deque()

    for root in roots:
        ga = f"{root.group}:{root.artifact}"
        if ga not in seen:
            seen.add(ga)
            queue.append((root, frozenset()))

    while queue and len(resolved) < max_artifacts:
        coord, exclusions = queue.popleft()
        pom = _load_pom_chain(fetch_text, coord, repositories, cache)
        if pom is not None and pom.packaging == "pom" and coord.extension == "jar":
            coord = MavenCoordinate(coord.group, coord.artifact, coord.version, coord.classifier, "pom")
        resolved.append(coord)
        if pom is None:
            continue
        for dep in pom.dependencies:
            if dep.scope in _SKIPPED_SCOPES or dep.optional:
                continue
            group = substitute_properties(dep.group, pom.properties) or dep.group
            artifact = substitute_properties(dep.artifact, pom.properties) or dep.artifact
            ga = f"{group}:{artifact}"
            if ga in seen or ga in exclusions or f"{group}:*" in exclusions:
                continue
            version = dep.version or pom.managed.get(ga) or pom.managed.get(dep.key)
            version = substitute_properties(version, pom.properties)
            if not version or "${" in version:
                logger.debug("Skipping %s: unresolved version %r", ga, version)
                continue
            # version ranges like [1.0,2.0) pick the lower bound
            if version[:1] in "[(":
                version = version.strip("[()]").split(",")[0].strip()
                if not version:
                    continue
            seen.add(ga)
            ext = "jar" if dep.type in ("jar", "bundle", "") else dep.type
            child = MavenCoordinate(group, artifact, version, dep.classifier, ext)
            queue.append((child, exclusions | frozenset(dep.exclusions)))
    return resolved
