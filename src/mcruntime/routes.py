"""
routes.py

Upstream endpoints used by the engine, grouped per service, plus the mirror
routing rules that turn one canonical URL into an ordered candidate list.

All builders return plain URL strings. Nothing here performs network I/O.
"""

from __future__ import annotations

from typing import Dict, List, Optional
from urllib.parse import urlparse

from .models import LoaderKind


class MOJANG:
    """Piston/launcher meta and the asset CDN."""
    MANIFEST_URLS = (
        "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json",
        "https://launchermeta.mojang.com/mc/game/version_manifest_v2.json",
    )
    META_HOSTS = ("piston-meta.mojang.com", "launchermeta.mojang.com")
    DATA_HOSTS = ("piston-data.mojang.com", "launcher.mojang.com")
    RESOURCES = "https://resources.download.minecraft.net"
    LIBRARIES = "https://libraries.minecraft.net"


class FABRIC:
    META = "https://meta.fabricmc.net/v2"
    MAVEN = "https://maven.fabricmc.net"


class QUILT:
    META = "https://meta.quiltmc.org/v3"
    MAVEN = "https://maven.quiltmc.org/repository/release"


class FORGE:
    MAVEN = "https://maven.minecraftforge.net"
    FILES_MAVEN = "https://files.minecraftforge.net/maven"
    PROMOTIONS = (
        "https://files.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json",
        "https://maven.minecraftforge.net/net/minecraftforge/forge/promotions_slim.json",
    )


class NEOFORGE:
    MAVEN = "https://maven.neoforged.net/releases"
    VERSIONS_API = "https://maven.neoforged.net/api/maven/versions/releases/net/neoforged/neoforge"


class MAVEN:
    CENTRAL = "https://repo.maven.apache.org/maven2"
    REPO1 = "https://repo1.maven.org/maven2"
    JETBRAINS = "https://packages.jetbrains.team/maven/p/ij/intellij-dependencies"
    BMCLAPI = "https://bmclapi2.bangbang93.com/maven"


class ADOPTIUM:
    API = "https://api.adoptium.net/v3"


# Mojang meta
def manifest_urls() -> List[str]:
    return list(MOJANG.MANIFEST_URLS)


def swap_mojang_domain(url: str) -> Optional[str]:
    """
    Twin of a Mojang metadata (piston-meta <-> launchermeta) or data
    (piston-data <-> launcher) URL, or None for any other host.
    """
    host = urlparse(url).netloc
    for a, b in (MOJANG.META_HOSTS, MOJANG.DATA_HOSTS):
        if host == a:
            return url.replace(a, b, 1)
        if host == b:
            return url.replace(b, a, 1)
    return None


def with_domain_fallback(url: str) -> List[str]:
    twin = swap_mojang_domain(url)
    return [url, twin] if twin else [url]


def asset_object_urls(digest: str) -> List[str]:
    return [f"{MOJANG.RESOURCES}/{digest[:2]}/{digest}"]


# Loader meta
def fabric_like_meta_base(kind: LoaderKind) -> str:
    if kind is LoaderKind.FABRIC:
        return FABRIC.META
    if kind is LoaderKind.QUILT:
        return QUILT.META
    raise ValueError(f"{kind.value} has no fabric-style metadata API")


def fabric_like_loader_list_url(kind: LoaderKind, mc_version: str) -> str:
    return f"{fabric_like_meta_base(kind)}/versions/loader/{mc_version}"


def fabric_like_profile_urls(kind: LoaderKind, mc_version: str, loader_version: str) -> List[str]:
    """
    Profile JSON for an exact loader version, then the service's fallback
    (Fabric: "stable" alias; Quilt: latest loader for the game version).
    """
    base = fabric_like_meta_base(kind)
    primary = f"{base}/versions/loader/{mc_version}/{loader_version}/profile/json"
    if kind is LoaderKind.FABRIC:
        fallback = f"{base}/versions/loader/{mc_version}/stable/profile/json"
    else:
        fallback = f"{base}/versions/loader/{mc_version}/profile/json"
    return [primary, fallback]


def forge_promotions_urls() -> List[str]:
    return list(FORGE.PROMOTIONS)


NEOFORGE_LEGACY_GAME_VERSION = "1.20.1"


def neoforge_uses_legacy_artifact(mc_version: Optional[str]) -> bool:
    """NeoForge for 1.20.1 was published as net.neoforged:forge with "<mc>-<version>" ids."""
    return mc_version == NEOFORGE_LEGACY_GAME_VERSION


def forge_like_metadata_urls(kind: LoaderKind, mc_version: Optional[str] = None) -> List[str]:
    if kind is LoaderKind.NEOFORGE and neoforge_uses_legacy_artifact(mc_version):
        return [f"{NEOFORGE.MAVEN}/net/neoforged/forge/maven-metadata.xml"]
    if kind is LoaderKind.FORGE:
        return [f"{FORGE.MAVEN}/net/minecraftforge/forge/maven-metadata.xml",
                f"{FORGE.FILES_MAVEN}/net/minecraftforge/forge/maven-metadata.xml"]
    if kind is LoaderKind.NEOFORGE:
        return [f"{NEOFORGE.MAVEN}/net/neoforged/neoforge/maven-metadata.xml"]
    raise ValueError(f"{kind.value} has no installer metadata")


def forge_like_installer_urls(kind: LoaderKind, full_version: str) -> List[str]:
    if kind is LoaderKind.FORGE:
        rel = f"net/minecraftforge/forge/{full_version}/forge-{full_version}-installer.jar"
        return [f"{FORGE.MAVEN}/{rel}", f"{FORGE.FILES_MAVEN}/{rel}", f"{MAVEN.BMCLAPI}/{rel}"]
    if kind is LoaderKind.NEOFORGE and full_version.startswith(NEOFORGE_LEGACY_GAME_VERSION + "-"):
        rel = f"net/neoforged/forge/{full_version}/forge-{full_version}-installer.jar"
        return [f"{NEOFORGE.MAVEN}/{rel}", f"{MAVEN.BMCLAPI}/{rel}"]
    if kind is LoaderKind.NEOFORGE:
        rel = f"net/neoforged/neoforge/{full_version}/neoforge-{full_version}-installer.jar"
        return [f"{NEOFORGE.MAVEN}/{rel}", f"{MAVEN.BMCLAPI}/{rel}"]
    raise ValueError(f"{kind.value} has no installer")


def adoptium_latest_url(major: int, os_name: str, arch: str, image_type: str = "jre") -> str:
    adoptium_os = {"osx": "mac"}.get(os_name, os_name)
    return (f"{ADOPTIUM.API}/assets/latest/{int(major)}/hotspot"
            f"?architecture={arch}&heap_size=normal&image_type={image_type}"
            f"&jvm_impl=hotspot&os={adoptium_os}&project=jdk&vendor=eclipse")


# Mirror routing
_MIRROR_HOSTS: Dict[str, str] = {
    "maven.minecraftforge.net": FORGE.FILES_MAVEN,
    "maven.neoforged.net": "https://maven.neoforged.net/releases",
}

_FALLBACK_REPOS = (
    MAVEN.CENTRAL,
    MAVEN.REPO1,
    MAVEN.JETBRAINS,
    NEOFORGE.MAVEN,
    FORGE.MAVEN,
    MAVEN.BMCLAPI,
)


def _maven_path_of(url: str) -> Optional[str]:
    """Path of an artifact below its repository root, for the repositories we know."""
    known_roots = (MOJANG.LIBRARIES, MAVEN.CENTRAL, MAVEN.REPO1, MAVEN.JETBRAINS, NEOFORGE.MAVEN,
                   FORGE.MAVEN, FORGE.FILES_MAVEN, FABRIC.MAVEN, QUILT.MAVEN, MAVEN.BMCLAPI)
    for root in known_roots:
        if url.startswith(root + "/"):
            return url[len(root) + 1:]
    return None


def mirror_candidates_for_url(url: str) -> List[str]:
    """
    Ordered, de-duplicated candidate list for a library URL.

    Rules:
      - libraries.minecraft.net artifacts that really live elsewhere get their
        home repository first (Apache -> Central, JetBrains -> Central/JetBrains,
        NeoForge/cpw.mods -> NeoForged, Forge -> Forge maven).
      - Kotlin artifacts on Central only fall back to Central/repo1/JetBrains.
      - The original URL is always present, followed by generic fallbacks.
      - Forge and NeoForged hosts get their secondary host.
    """
    candidates: List[str] = []
    path = _maven_path_of(url)

    if url.startswith(MOJANG.LIBRARIES + "/") and path:
        if path.startswith("org/apache/"):
            candidates.append(f"{MAVEN.CENTRAL}/{path}")
        elif path.startswith("org/jetbrains/"):
            candidates += [f"{MAVEN.CENTRAL}/{path}", f"{MAVEN.REPO1}/{path}", f"{MAVEN.JETBRAINS}/{path}"]
        elif path.startswith(("net/neoforged/", "cpw/mods/")):
            candidates.append(f"{NEOFORGE.MAVEN}/{path}")
        elif path.startswith("net/minecraftforge/"):
            candidates.append(f"{FORGE.MAVEN}/{path}")

    candidates.append(url)

    host = urlparse(url).netloc
    if host in _MIRROR_HOSTS and path:
        candidates.append(f"{_MIRROR_HOSTS[host]}/{path}")

    if path:
        if url.startswith(MAVEN.CENTRAL + "/") and path.startswith("org/jetbrains/kotlin"):
            fallbacks = (MAVEN.CENTRAL, MAVEN.REPO1, MAVEN.JETBRAINS)
        else:
            fallbacks = _FALLBACK_REPOS
        candidates += [f"{root}/{path}" for root in fallbacks]

    seen = set()
    ordered = []
    for c in candidates:
        if c not in seen:
            seen.add(c)
            ordered.append(c)
    return ordered


_ENDPOINT_LABELS = (
    ("meta.fabricmc.net", "fabric-meta"),
    ("maven.fabricmc.net", "fabric-maven"),
    ("meta.quiltmc.org", "quilt-meta"),
    ("maven.quiltmc.org", "quilt-maven"),
    ("maven.minecraftforge.net", "forge-maven"),
    ("files.minecraftforge.net", "forge-files"),
    ("maven.neoforged.net", "neoforge-maven"),
    ("piston-meta.mojang.com", "mojang-meta"),
    ("launchermeta.mojang.com", "mojang-meta"),
    ("piston-data.mojang.com", "mojang-data"),
    ("libraries.minecraft.net", "mojang-libraries"),
    ("resources.download.minecraft.net", "mojang-assets"),
    ("api.adoptium.net", "adoptium"),
    ("bmclapi2.bangbang93.com", "bmclapi"),
)


def endpoint_label(url: str) -> str:
    """Short service name for a URL, used in error reports and logs."""
    host = urlparse(url).netloc
    for needle, label in _ENDPOINT_LABELS:
        if host == needle:
            return label
    return host or "unknown"
