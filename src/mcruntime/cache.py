"""
mcruntime.cache
---------------

Content-addressed file caches.

Entries live at ``<root>/<hash[:2]>/<hash>`` and are immutable once written.
Publication is first-writer-wins: a writer stages its copy next to the entry
and hard-links (or, where links are unsupported, renames) it into place, so
concurrent writers of the same content never need a lock. Every lookup
re-verifies the entry; an entry that fails verification is evicted and
reported as a miss.
"""

from __future__ import annotations

import os
import logging
import tempfile
from pathlib import Path
from typing import *

from .fileops import copy_file_atomic, safe_remove
from .utils import file_digest

logger = logging.getLogger(__name__)


class ContentCache:
    """
    One content-addressed store.

    Parameters
    ----------
    root : Path
        Directory holding the two-character fan-out folders.
    algorithm : str
        Hash algorithm of the keys (sha1 for everything Mojang publishes).
    name : str
        Label used in logs ("local", "global").
    """

    def __init__(self, root: Path, *, algorithm: str = "sha1", name: str = "cache"):
        self.root = Path(root)
        self.algorithm = algorithm
        self.name = name

    def path_for(self, digest: str) -> Path:
        digest = digest.lower()
        return self.root / digest[:2] / digest

    def lookup(self, digest: str, size: Optional[int] = None) -> Optional[Path]:
        """
        Return the verified entry for `digest`, or None.

        A present entry with the wrong size or content is removed.
        """
        path = self.path_for(digest)
        if not path.is_file():
            return None
        try:
            if size is not None and path.stat().st_size != size:
                raise ValueError("size mismatch")
            actual = file_digest(path, self.algorithm)
        except (OSError, ValueError) as exc:
            logger.warning("Evicting unreadable %s cache entry %s: %s", self.name, digest, exc)
            self.evict(digest)
            return None
        if actual != digest.lower():
            logger.warning("Evicting corrupt %s cache entry %s (actual %s)", self.name, digest, actual)
            self.evict(digest)
            return None
        return path

    def evict(self, digest: str) -> None:
        safe_remove(self.path_for(digest))

    def store(self, src: Path, digest: str) -> Path:
        """
        Publish `src` (already verified by the caller) under `digest`.

        If an entry already exists it is kept; the new copy is discarded.
        """
        target = self.path_for(digest)
        if target.is_file():
            return target
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{digest}.", suffix=".tmp")
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            copy_file_atomic(src, tmp)
            try:
                os.link(tmp, target)
            except FileExistsError:
                pass
            except OSError:
                # filesystems without hard links: rename, identical content either way
                if not target.exists():
                    os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)
        return target


class TieredCache:
    """
    Per-installation cache backed by a global cross-instance cache.

    Lookups check the local tier first; a global hit is promoted into the
    local tier. Stores populate both tiers.
    """

    def __init__(self, local: ContentCache, global_: Optional[ContentCache] = None):
        self.local = local
        self.global_ = global_

    @property
    def tiers(self) -> List[ContentCache]:
        return [c for c in (self.local, self.global_) if c is not None]

    def lookup(self, digest: str, size: Optional[int] = None) -> Optional[Path]:
        hit = self.local.lookup(digest, size)
        if hit is not None:
            return hit
        if self.global_ is None:
            return None
        hit = self.global_.lookup(digest, size)
        if hit is None:
            return None
        logger.debug("Promoting %s from global cache", digest)
        return self.local.store(hit, digest)

    def fetch_into(self, digest: str, dest: Path, size: Optional[int] = None) -> bool:
        hit = self.lookup(digest, size)
        if hit is None:
            return False
        copy_file_atomic(hit, dest)
        return True

    def store(self, src: Path, digest: str) -> None:
        for cache in self.tiers:
            cache.store(src, digest)
