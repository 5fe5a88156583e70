"""
mcruntime.documents
-------------------

Operations on version documents (plain nested dicts as published by Mojang
and the loader projects):

- merge_version_documents: deep merge of an inheriting profile into its parent
- normalize_loader_profile: force a loader profile onto its vanilla base
- detect_loader: guess the loader from a document's libraries
- loader_library_present / profile_evidence_ok: evidence that a profile on disk
  really is the requested loader version
- document_hash: order-independent hash used for drift detection
"""

from __future__ import annotations

import copy
import logging
from typing import *

from .models import LoaderKind
from .utils import stable_json_hash

logger = logging.getLogger(__name__)

# Library name prefixes (group:artifact) that identify each loader.
LOADER_LIBRARY_PREFIXES: Dict[LoaderKind, Tuple[str, ...]] = {
    LoaderKind.FABRIC: ("net.fabricmc:fabric-loader:",),
    LoaderKind.QUILT: ("org.quiltmc:quilt-loader:",),
    LoaderKind.FORGE: ("net.minecraftforge:forge:", "net.minecraftforge:fmlloader:",
                       "net.minecraftforge:fmlcore:"),
    LoaderKind.NEOFORGE: ("net.neoforged:neoforge:", "net.neoforged.fancymodloader:loader:",
                          "net.neoforged:fancymodloader:", "net.neoforged.fancymodloader:",
                          "net.neoforged:forge:"),
}

LAUNCH_TARGETS = {
    LoaderKind.FORGE: "forgeclient",
    LoaderKind.NEOFORGE: "neoforgeclient",
}


def _merge_values(parent: Any, child: Any) -> Any:
    if isinstance(parent, dict) and isinstance(child, dict):
        merged = dict(parent)
        for key, value in child.items():
            merged[key] = _merge_values(parent[key], value) if key in parent else copy.deepcopy(value)
        return merged
    if isinstance(parent, list) and isinstance(child, list):
        return [*copy.deepcopy(parent), *copy.deepcopy(child)]
    return copy.deepcopy(child)


def merge_libraries(parent: List[Dict[str, Any]], child: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Parent libraries followed by child libraries, every entry kept. A child
    that redeclares an artifact in another version is resolved when the
    classpath is assembled, not here.
    """
    return [copy.deepcopy(lib) for lib in [*parent, *child] if isinstance(lib, dict)]


def merge_version_documents(parent: Dict[str, Any], child: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge an inheriting document (`child`) into its base (`parent`).

    - ``libraries`` concatenate (parent first)
    - ``arguments.game`` / ``arguments.jvm`` concatenate per key
    - nested mappings merge recursively with child precedence
    - scalars (``mainClass``, ``id``, ``minecraftArguments`` ...) take the child's value

    Neither input is modified.
    """
    merged = _merge_values(parent or {}, {k: v for k, v in (child or {}).items() if k != "libraries"})
    merged["libraries"] = merge_libraries(list((parent or {}).get("libraries") or []),
                                          list((child or {}).get("libraries") or []))
    return merged


def resolve_inheritance(document: Dict[str, Any],
                        load: Callable[[str], Dict[str, Any]],
                        max_depth: int = 8) -> Dict[str, Any]:
    """
    Follow ``inheritsFrom`` links with `load` and merge the chain root-first.

    Raises
    ------
    ValueError
        On an inheritance cycle or a chain deeper than `max_depth`.
    """
    chain = [document]
    seen = {document.get("id")}
    current = document
    while current.get("inheritsFrom"):
        parent_id = current["inheritsFrom"]
        if parent_id in seen or len(chain) > max_depth:
            raise ValueError(f"Inheritance cycle or chain too deep at {parent_id!r}")
        seen.add(parent_id)
        current = load(parent_id)
        chain.append(current)
    merged = chain[-1]
    for doc in reversed(chain[:-1]):
        merged = merge_version_documents(merged, doc)
    merged["id"] = document.get("id", merged.get("id"))
    return merged


def document_hash(document: Dict[str, Any]) -> str:
    return stable_json_hash(document)


def normalize_loader_profile(profile: Dict[str, Any], minecraft_version: str, loader: LoaderKind) -> Dict[str, Any]:
    """
    Return a copy of a loader profile pinned to its vanilla base.

    Fabric/Quilt: ``inheritsFrom`` and ``jar`` become the exact game version.
    Forge/NeoForge: the installer's chain is kept; ``launchTarget`` and
    ``inheritsFrom`` are added when missing.
    ``mainClass`` becomes the loader's canonical entrypoint unless it already
    is one of the accepted ones.
    """
    doc = copy.deepcopy(profile)
    if loader.is_forge_like:
        doc.setdefault("inheritsFrom", minecraft_version)
        doc.setdefault("launchTarget", LAUNCH_TARGETS[loader])
    elif loader is not LoaderKind.VANILLA:
        doc["inheritsFrom"] = minecraft_version
        doc["jar"] = minecraft_version
    if doc.get("mainClass") not in loader.accepted_main_classes:
        if doc.get("mainClass"):
            logger.info("Normalizing %s mainClass %s -> %s", loader.value, doc.get("mainClass"),
                        loader.canonical_main_class)
        doc["mainClass"] = loader.canonical_main_class
    return doc


def detect_loader(document: Dict[str, Any]) -> LoaderKind:
    """Guess the loader a (merged or profile) document belongs to from its libraries."""
    names = [str(lib.get("name", "")) for lib in document.get("libraries") or [] if isinstance(lib, dict)]
    # NeoForge before Forge: NeoForge 1.20.1 still publishes net.neoforged:forge
    for kind in (LoaderKind.NEOFORGE, LoaderKind.FORGE, LoaderKind.QUILT, LoaderKind.FABRIC):
        prefixes = LOADER_LIBRARY_PREFIXES[kind]
        if any(name.startswith(prefixes) for name in names):
            return kind
    return LoaderKind.VANILLA


def loader_library_present(document: Dict[str, Any], loader: LoaderKind,
                           loader_version: Optional[str] = None) -> bool:
    """
    True if the document declares the loader's own library, and (when given)
    one whose coordinate contains `loader_version`.
    """
    if loader is LoaderKind.VANILLA:
        return True
    prefixes = LOADER_LIBRARY_PREFIXES[loader]
    for lib in document.get("libraries") or []:
        name = str(lib.get("name", "")) if isinstance(lib, dict) else ""
        if name.startswith(prefixes):
            if not loader_version or loader_version in name:
                return True
    # installer profiles sometimes only carry the version in their id / arguments
    if loader_version and loader.is_forge_like:
        text = " ".join(str(a) for a in (document.get("arguments") or {}).get("game") or [])
        return loader_version in str(document.get("id", "")) or loader_version in text
    return False


def profile_evidence_ok(document: Optional[Dict[str, Any]], loader: LoaderKind,
                        loader_version: Optional[str] = None) -> bool:
    """
    Evidence that an existing profile can be reused without re-installing:
    it parses, names an accepted entrypoint and carries the loader library.
    """
    if not isinstance(document, dict):
        return False
    if document.get("mainClass") not in loader.accepted_main_classes:
        return False
    return loader_library_present(document, loader, loader_version)


def client_download(document: Dict[str, Any]) -> Dict[str, Any]:
    """``downloads.client`` entry (url/sha1/size) or an empty mapping."""
    downloads = document.get("downloads") if isinstance(document.get("downloads"), dict) else {}
    client = downloads.get("client")
    return client if isinstance(client, dict) else {}


def jar_version_id(document: Dict[str, Any]) -> str:
    """Version id whose ``versions/<id>/<id>.jar`` is the game client for this document."""
    return str(document.get("jar") or document.get("inheritsFrom") or document.get("id") or "")
