"""
mcruntime.versions
------------------

Vanilla version resolution: manifest lookup, version documents, client jar,
asset index and objects, libraries and legacy natives.

Local files are always preferred: a version document already present and
parseable is used without contacting the manifest, and every download task
short-circuits on an existing verified destination.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import *

from .client import MetadataClient
from .documents import client_download, jar_version_id
from .download import DownloadManager
from .exceptions import IntegrityFailure, MissingMetadataFailure
from .fileops import copy_file_atomic, read_json
from .maven import library_allowed, library_artifact, library_native
from .models import DownloadTask, VersionManifestEntry
from .paths import LauncherLayout
from .routes import asset_object_urls, manifest_urls, with_domain_fallback

logger = logging.getLogger(__name__)


class VersionResolver:
    """
    Parameters
    ----------
    layout : LauncherLayout
        Shared launcher directories.
    client : MetadataClient
        Used for the version manifest.
    downloader : DownloadManager
        Used for every file that has a declared hash.
    manifest_ttl : int
        Freshness window of the cached manifest (seconds).
    """

    def __init__(self, layout: LauncherLayout, client: MetadataClient, downloader: DownloadManager,
                 *, manifest_ttl: int = 3600):
        self.layout = layout
        self.client = client
        self.downloader = downloader
        self.manifest_ttl = manifest_ttl

    # manifest
    def fetch_manifest(self) -> Dict[str, Any]:
        return self.client.get_json(manifest_urls(), cache=True, ttl=self.manifest_ttl,
                                    what="version manifest")

    def manifest_entry(self, version_id: str) -> VersionManifestEntry:
        """
        Raises
        ------
        MissingMetadataFailure
            If the manifest does not list `version_id`.
        """
        manifest = self.fetch_manifest()
        for raw in manifest.get("versions") or []:
            if raw.get("id") == version_id:
                return VersionManifestEntry.from_dict(raw)
        raise MissingMetadataFailure(f"Minecraft version {version_id!r} not found in the version manifest",
                                     context={"version": version_id},
                                     hint="Check the version id; snapshots need their exact id (e.g. 24w14a).")

    def latest(self, kind: str = "release") -> str:
        manifest = self.fetch_manifest()
        latest = manifest.get("latest") or {}
        if kind not in latest:
            raise MissingMetadataFailure(f"Manifest has no latest {kind!r}")
        return latest[kind]

    # version documents
    def load_local_document(self, version_id: str) -> Optional[Dict[str, Any]]:
        doc = read_json(self.layout.version_json_path(version_id))
        if isinstance(doc, dict) and doc.get("id"):
            return doc
        return None

    def load_document(self, version_id: str) -> Dict[str, Any]:
        """Local document or MissingMetadataFailure (used to walk installed inheritance chains)."""
        doc = self.load_local_document(version_id)
        if doc is None:
            raise MissingMetadataFailure(f"Version document for {version_id!r} is not installed",
                                         context={"path": str(self.layout.version_json_path(version_id))})
        return doc

    def ensure_version_document(self, version_id: str) -> Dict[str, Any]:
        """
        Return the vanilla document for `version_id`, downloading it (sha1
        verified against the manifest) when it is missing or unreadable.
        """
        doc = self.load_local_document(version_id)
        if doc is not None:
            return doc
        entry = self.manifest_entry(version_id)
        task = DownloadTask(urls=with_domain_fallback(entry.url),
                            destination=self.layout.version_json_path(version_id),
                            sha1=entry.sha1, kind="metadata", label=f"{version_id}.json")
        self.downloader.download(task)
        doc = self.load_local_document(version_id)
        if doc is None:
            raise IntegrityFailure(f"Downloaded version document for {version_id} is not valid JSON",
                                   context={"path": str(task.destination)})
        return doc

    # client jar
    def client_jar_task(self, document: Dict[str, Any], version_id: Optional[str] = None) -> DownloadTask:
        version_id = version_id or document.get("id")
        client = client_download(document)
        if not client.get("url"):
            raise MissingMetadataFailure(f"Version {version_id} declares no client download",
                                         context={"version": version_id})
        return DownloadTask(urls=with_domain_fallback(client["url"]),
                            destination=self.layout.version_jar_path(version_id),
                            sha1=client.get("sha1"), size=client.get("size"), kind="client",
                            require_archive=True, label=f"{version_id}.jar")

    # assets
    def asset_index_task(self, document: Dict[str, Any]) -> Optional[DownloadTask]:
        index = document.get("assetIndex")
        if not isinstance(index, dict) or not index.get("id") or not index.get("url"):
            return None
        return DownloadTask(urls=with_domain_fallback(index["url"]),
                            destination=self.layout.asset_indexes_dir / f"{index['id']}.json",
                            sha1=index.get("sha1"), size=index.get("size"), kind="metadata",
                            label=f"asset index {index['id']}")

    def load_asset_index(self, document: Dict[str, Any]) -> Dict[str, Any]:
        index_id = asset_index_id(document)
        if not index_id:
            return {"objects": {}}
        data = read_json(self.layout.asset_indexes_dir / f"{index_id}.json")
        if not isinstance(data, dict):
            raise IntegrityFailure(f"Asset index {index_id} is missing or unreadable",
                                   context={"path": str(self.layout.asset_indexes_dir / f'{index_id}.json')})
        return data

    def asset_tasks(self, index: Dict[str, Any]) -> List[DownloadTask]:
        tasks = []
        for name, obj in (index.get("objects") or {}).items():
            digest = (obj or {}).get("hash")
            if not digest:
                continue
            tasks.append(DownloadTask(urls=asset_object_urls(digest),
                                      destination=self.layout.asset_object_path(digest),
                                      sha1=digest, size=obj.get("size"), kind="asset", label=name))
        return tasks

    def materialize_legacy_assets(self, index_id: str, index: Dict[str, Any], game_dir: Path) -> int:
        """
        Copy objects to their named locations for pre-1.7 layouts:
        ``assets/virtual/<index>/`` (``virtual``) and ``<game>/resources``
        (``map_to_resources``). Returns the number of files written.
        """
        targets: List[Path] = []
        if index.get("virtual"):
            targets.append(self.layout.assets_dir / "virtual" / index_id)
        if index.get("map_to_resources"):
            targets.append(Path(game_dir) / "resources")
        if not targets:
            return 0
        written = 0
        for name, obj in (index.get("objects") or {}).items():
            digest = (obj or {}).get("hash")
            if not digest:
                continue
            src = self.layout.asset_object_path(digest)
            for base in targets:
                dest = base.joinpath(*name.split("/"))
                if dest.is_file() and dest.stat().st_size == obj.get("size", -1):
                    continue
                copy_file_atomic(src, dest)
                written += 1
        return written

    # libraries
    def library_tasks(self, document: Dict[str, Any]) -> List[DownloadTask]:
        """Artifact + legacy natives tasks for every library allowed on this OS."""
        tasks: List[DownloadTask] = []
        for lib in document.get("libraries") or []:
            if not isinstance(lib, dict) or not library_allowed(lib):
                continue
            for artifact in (library_artifact(lib, self.layout.libraries_dir),
                             library_native(lib, self.layout.libraries_dir)):
                if artifact is None:
                    continue
                tasks.append(DownloadTask(urls=artifact.urls, destination=artifact.path, sha1=artifact.sha1,
                                          size=artifact.size, kind="library",
                                          require_archive=artifact.path.suffix in (".jar", ".zip"),
                                          label=artifact.name))
        return tasks

    def ensure_runtime_files(self, document: Dict[str, Any], game_dir: Path) -> None:
        """
        Download everything a merged document needs: client jar, asset index,
        libraries, asset objects (and legacy asset layouts).
        """
        version_id = jar_id = jar_version_id(document)
        first = [self.client_jar_task(document, jar_id)]
        index_task = self.asset_index_task(document)
        if index_task is not None:
            first.append(index_task)
        self.downloader.download_many(first, label=f"{version_id} client")
        self.downloader.download_many(self.library_tasks(document), label=f"{version_id} libraries")
        index = self.load_asset_index(document)
        self.downloader.download_many(self.asset_tasks(index), label=f"{version_id} assets")
        index_name = asset_index_id(document)
        if index_name:
            copied = self.materialize_legacy_assets(index_name, index, game_dir)
            if copied:
                logger.info("Materialized %d legacy asset files for index %s", copied, index_name)


def asset_index_id(document: Dict[str, Any]) -> Optional[str]:
    index = document.get("assetIndex")
    if isinstance(index, dict) and index.get("id"):
        return str(index["id"])
    return document.get("assets")
