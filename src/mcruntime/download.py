"""
mcruntime.download
------------------

Download engine used for every binary the runtime needs (client jars,
libraries, asset objects, installers, Java runtimes).

Features
- Ordered URL candidates per task; the next candidate is tried on failure
- Resume-able downloads via "Range" header and .part side files
- Size, sha1 and archive-structure verification before promotion
- Atomic promotion: the destination is either fully verified or absent
- Two-tier content-addressed cache consulted before any network call
- Retries with exponential backoff, honoring Retry-After
- Rejection of HTML/JSON error pages served in place of binaries
- Bulk download over a thread pool, bounded per kind by counting semaphores
"""

from __future__ import annotations

import os
import time
import logging
import threading
from contextlib import closing
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import *

import requests
from tqdm import tqdm

from .cache import TieredCache
from .exceptions import IntegrityFailure, NetworkFailure, RuntimeEngineError
from .fileops import is_zip_archive, safe_remove, temp_part_path
from .models import DownloadResult, DownloadTask
from .routes import endpoint_label
from .utils import exponential_backoff, file_digest, parse_retry_after

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# Content types that are never a jar/zip/tarball. Mirrors and captive portals
# answer 200 with one of these instead of a proper error status.
SUSPICIOUS_BINARY_CONTENT_TYPES = frozenset({
    "text/html",
    "text/plain",
    "text/xml",
    "application/json",
    "application/xml",
    "application/xhtml+xml",
})

_BINARY_SUFFIXES = (".jar", ".zip", ".gz", ".tgz", ".exe")

ProgressCallback = Callable[[int, Optional[int], Dict[str, Any]], None]
# callback(downloaded_bytes, total_bytes_or_None, meta) -> None


@dataclass
class _AttemptOutcome:
    """Outcome of a single request against a single URL."""
    ok: bool
    error: Optional[str] = None
    integrity: bool = False
    permanent: bool = False
    retry_after: float = 0.0
    bytes: int = 0


class DownloadManager:
    """
    Materializes DownloadTask objects on disk.

    Parameters
    ----------
    session : Optional[requests.Session]
        Session to use. If not provided, a new session is created.
    cache : Optional[TieredCache]
        Content cache consulted before the network and populated afterwards.
    max_retries : int
        Default number of passes over a task's URL candidates.
    backoff_base : float
        Base interval for exponential backoff (seconds).
    timeout : float | (float, float)
        requests timeout (connect, read).
    slots : Optional[Dict[str, int]]
        Concurrency bound per task kind ("asset", "default").
    progress : bool
        Show a tqdm progress bar for bulk downloads.
    """

    def __init__(self,
                 session: Optional[requests.Session] = None,
                 *,
                 cache: Optional[TieredCache] = None,
                 max_retries: int = 4,
                 backoff_base: float = 0.6,
                 timeout: Union[float, Tuple[float, float]] = (12.0, 120.0),
                 slots: Optional[Dict[str, int]] = None,
                 progress: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session or requests.Session()
        self.cache = cache
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = float(backoff_base)
        self.timeout = timeout
        self.progress = progress
        self._sleep = sleep
        slots = dict(slots or {})
        self._slot_sizes = {"asset": max(1, int(slots.get("asset", 32))),
                            "default": max(1, int(slots.get("default", 8)))}
        self._slots = {k: threading.BoundedSemaphore(v) for k, v in self._slot_sizes.items()}
        self._counter_lock = threading.Lock()
        self._network_requests = 0

    @property
    def network_requests(self) -> int:
        """Number of HTTP requests issued so far by this manager."""
        with self._counter_lock:
            return self._network_requests

    def _slot(self, kind: str) -> threading.BoundedSemaphore:
        return self._slots["asset" if kind == "asset" else "default"]

    def _request_stream(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """
        Perform a streaming GET request. This method does not retry; the
        download loop controls retries.
        """
        with self._counter_lock:
            self._network_requests += 1
        return self.session.get(url, stream=True, headers=headers or {}, timeout=self.timeout)

    # verification
    @staticmethod
    def verify_file(path: Path, task: DownloadTask) -> Optional[str]:
        """
        Check `path` against the task's expectations.

        Returns None when the file is acceptable, otherwise the reason.
        """
        try:
            size = Path(path).stat().st_size
        except OSError as exc:
            return f"unreadable: {exc}"
        if size == 0:
            return "empty file"
        if task.size is not None and size != int(task.size):
            return f"size mismatch (expected {task.size}, got {size})"
        if task.sha1:
            try:
                actual = file_digest(path, "sha1")
            except OSError as exc:
                return f"unreadable: {exc}"
            if actual != task.sha1:
                return f"sha1 mismatch (expected {task.sha1}, got {actual})"
        if task.require_archive and not is_zip_archive(Path(path)):
            return "not a valid archive"
        return None

    def _expects_binary(self, task: DownloadTask) -> bool:
        return task.require_archive or task.destination.name.lower().endswith(_BINARY_SUFFIXES)

    def _attempt_download(self,
                          url: str,
                          task: DownloadTask,
                          progress_cb: Optional[ProgressCallback] = None) -> _AttemptOutcome:
        """
        Single attempt to download `url` into the task's side file, then
        verify and promote it. Raises nothing; the caller decides what next.
        """
        dest = task.destination
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = temp_part_path(dest)

        existing = part.stat().st_size if part.exists() else 0
        if existing and task.size is not None and existing >= int(task.size):
            # a complete (or oversized) leftover: check it instead of asking for an empty range
            if existing == int(task.size) and self.verify_file(part, task) is None:
                os.replace(part, dest)
                return _AttemptOutcome(ok=True)
            safe_remove(part)
            existing = 0

        headers = {"Range": f"bytes={existing}-"} if existing else {}
        try:
            resp = self._request_stream(url, headers=headers)
        except requests.RequestException as exc:
            return _AttemptOutcome(ok=False, error=f"{type(exc).__name__}: {exc}")

        with closing(resp):
            status = resp.status_code
            if status in (404, 410):
                return _AttemptOutcome(ok=False, error=f"HTTP {status}", permanent=True)
            if status == 416:
                # remote file changed under our .part
                safe_remove(part)
                return _AttemptOutcome(ok=False, error="HTTP 416: range not satisfiable, restarting")
            if status == 429:
                return _AttemptOutcome(ok=False, error="HTTP 429: rate limited",
                                       retry_after=parse_retry_after(resp.headers.get("Retry-After")))
            if status >= 400:
                return _AttemptOutcome(ok=False, error=f"HTTP {status}: {resp.reason}")

            if self._expects_binary(task):
                ctype = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()
                if ctype in SUSPICIOUS_BINARY_CONTENT_TYPES:
                    return _AttemptOutcome(ok=False, error=f"suspicious content-type {ctype!r} for binary payload")

            resumed = bool(existing) and status == 206
            if existing and not resumed:
                logger.debug("Server ignored range request for %s; restarting", url)
            written = existing if resumed else 0

            total: Optional[int] = None
            length = resp.headers.get("Content-Length")
            if length and length.isdigit():
                total = int(length) + written
            meta = {"url": url, "path": str(dest)}
            try:
                with open(part, "ab" if resumed else "wb") as f:
                    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                        if not chunk:
                            continue
                        f.write(chunk)
                        written += len(chunk)
                        if task.size is not None and written > int(task.size):
                            raise ValueError(f"payload exceeds expected size {task.size}")
                        if progress_cb:
                            progress_cb(written, total, meta)
                    f.flush()
                    os.fsync(f.fileno())
            except ValueError as exc:
                safe_remove(part)
                return _AttemptOutcome(ok=False, error=str(exc), integrity=True, bytes=written)
            except (requests.RequestException, OSError) as exc:
                # keep the part for resume
                return _AttemptOutcome(ok=False, error=f"{type(exc).__name__}: {exc}", bytes=written)

        reason = self.verify_file(part, task)
        if reason is not None:
            safe_remove(part)
            return _AttemptOutcome(ok=False, error=reason, integrity=True, bytes=written)

        try:
            os.replace(str(part), str(dest))
        except OSError as exc:
            return _AttemptOutcome(ok=False, error=f"promote failed: {exc}", bytes=written)
        return _AttemptOutcome(ok=True, bytes=written)

    def download(self, task: DownloadTask, *, progress_cb: Optional[ProgressCallback] = None) -> DownloadResult:
        """
        Make `task.destination` exist and verify.

        Order: already-valid destination, content cache, URL candidates
        (each pass walks every remaining candidate; passes are separated by
        exponential backoff).

        Returns
        -------
        DownloadResult

        Raises
        ------
        IntegrityFailure
            Every payload received failed verification.
        NetworkFailure
            Candidates exhausted; ``endpoints`` lists every URL tried.
        """
        dest = task.destination
        if dest.is_file():
            reason = self.verify_file(dest, task)
            if reason is None:
                return DownloadResult(path=dest, source="existing")
            logger.info("Replacing invalid %s: %s", dest.name, reason)
            safe_remove(dest)

        if task.sha1 and self.cache is not None:
            if self.cache.fetch_into(task.sha1, dest, task.size):
                reason = self.verify_file(dest, task)
                if reason is None:
                    logger.debug("Cache hit for %s", task.name)
                    return DownloadResult(path=dest, source="cache")
                # right hash, wrong shape: never trust that entry again
                logger.warning("Cached payload for %s rejected: %s", task.name, reason)
                safe_remove(dest)
                for tier in self.cache.tiers:
                    tier.evict(task.sha1)

        if not task.urls:
            raise NetworkFailure(f"No download source for {task.name}",
                                 context={"path": str(dest)},
                                 hint="The file is normally produced by a loader installer; reinstall the loader.")

        endpoints: List[Tuple[str, str]] = []
        integrity_only = True
        remaining = list(task.urls)
        retries = task.retries or self.max_retries
        attempt = 0
        while remaining and attempt < retries:
            attempt += 1
            wait = 0.0
            for url in list(remaining):
                outcome = self._attempt_download(url, task, progress_cb)
                if outcome.ok:
                    if task.sha1 and self.cache is not None:
                        self.cache.store(dest, task.sha1)
                    logger.debug("Downloaded %s from %s (attempt %d)", task.name, endpoint_label(url), attempt)
                    return DownloadResult(path=dest, source="network", url=url, attempts=attempt,
                                          bytes=outcome.bytes)
                logger.debug("Download of %s from %s failed: %s", task.name, url, outcome.error)
                endpoints.append((url, outcome.error or "unknown error"))
                integrity_only = integrity_only and outcome.integrity
                if outcome.permanent:
                    remaining.remove(url)
                wait = max(wait, outcome.retry_after)
            if remaining and attempt < retries:
                delay = max(wait, exponential_backoff(attempt, base=self.backoff_base))
                logger.warning("Retrying %s in %.2fs (attempt %d/%d)", task.name, delay, attempt + 1, retries)
                self._sleep(delay)

        if integrity_only:
            safe_remove(temp_part_path(dest))
        ctx = {"path": str(dest), "attempts": attempt}
        if endpoints and integrity_only:
            raise IntegrityFailure(f"Every payload for {task.name} failed verification: {endpoints[-1][1]}",
                                   context=ctx)
        raise NetworkFailure(f"Could not download {task.name}", endpoints=endpoints, context=ctx)

    def download_many(self,
                      tasks: Iterable[DownloadTask],
                      *,
                      label: str = "downloading",
                      progress_cb: Optional[Callable[[DownloadResult], None]] = None) -> List[DownloadResult]:
        """
        Download many tasks in parallel.

        Tasks are de-duplicated by destination. Every task runs in the shared
        thread pool but must first take a slot of its kind's semaphore, so
        several bulk calls running at once (different instances) still respect
        the global bounds.

        Returns
        -------
        List[DownloadResult]
            In completion order.

        Raises
        ------
        IntegrityFailure / NetworkFailure
            After all tasks finished, if any failed. The message names the
            failed files; endpoints of every failure are aggregated.
        """
        unique: Dict[str, DownloadTask] = {}
        for task in tasks:
            key = os.path.normcase(os.path.abspath(task.destination))
            unique.setdefault(key, task)
        if not unique:
            return []

        def _worker(task: DownloadTask) -> DownloadResult:
            with self._slot(task.kind):
                return self.download(task)

        results: List[DownloadResult] = []
        failures: List[Tuple[DownloadTask, RuntimeEngineError]] = []
        workers = min(len(unique), sum(self._slot_sizes.values()))
        started = time.monotonic()
        with tqdm(total=len(unique), desc=label, unit="file", disable=not self.progress, leave=False) as bar:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mcruntime-dl") as ex:
                futures = {ex.submit(_worker, t): t for t in unique.values()}
                for fut in as_completed(futures):
                    task = futures[fut]
                    try:
                        res = fut.result()
                    except RuntimeEngineError as exc:
                        failures.append((task, exc))
                    else:
                        results.append(res)
                        if progress_cb:
                            progress_cb(res)
                    bar.update(1)

        fetched = sum(1 for r in results if r.source == "network")
        logger.info("%s: %d files (%d fetched, %d failed) in %.1fs", label, len(unique), fetched,
                    len(failures), time.monotonic() - started)
        if not failures:
            return results

        names = ", ".join(t.name for t, _ in failures[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        message = f"{len(failures)} of {len(unique)} downloads failed: {names}{more}"
        if all(isinstance(exc, IntegrityFailure) for _, exc in failures):
            raise IntegrityFailure(message, context={"op": label})
        endpoints: List[Tuple[str, str]] = []
        for _, exc in failures:
            endpoints.extend(getattr(exc, "endpoints", []))
        raise NetworkFailure(message, endpoints=endpoints, context={"op": label})
