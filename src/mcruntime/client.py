"""
mcruntime.client
----------------

Metadata client for the JSON/XML documents the resolver needs: the version
manifest, version documents, loader metadata APIs, Maven metadata and POMs,
the Adoptium API.

Every call takes an ordered list of candidate URLs. Each pass walks the
candidates that are still eligible; passes are separated by exponential
backoff (Retry-After wins on 429). A 404/410 removes a candidate for the rest
of the call. When every candidate answered "not found" the resource is
considered missing upstream (MissingMetadataFailure); any other exhaustion is
a NetworkFailure listing every endpoint tried.

Optionally, responses are cached on disk with a TTL; a stale cache entry is
still served when the network is unavailable.
"""

from __future__ import annotations

import json
import time
import hashlib
import logging
import threading
from pathlib import Path
from typing import *

import requests

from .exceptions import MissingMetadataFailure, NetworkFailure
from .fileops import atomic_write
from .routes import endpoint_label
from .utils import exponential_backoff, parse_retry_after

logger = logging.getLogger(__name__)


class MetadataClient:
    """
    Small HTTP client for metadata documents.

    Parameters
    ----------
    session : Optional[requests.Session]
        Shared session (see utils.session_factory).
    timeout : float | (float, float)
        requests timeout (connect, read).
    max_retries : int
        Passes over the candidate list per call.
    backoff_base : float
        Base delay for exponential backoff between passes.
    cache_dir : Optional[Path]
        Directory for the on-disk response cache. None disables caching.
    cache_ttl : int
        Default freshness window in seconds for cached responses.
    """

    def __init__(self,
                 session: Optional[requests.Session] = None,
                 *,
                 timeout: Union[float, Tuple[float, float]] = (12.0, 120.0),
                 max_retries: int = 4,
                 backoff_base: float = 0.6,
                 cache_dir: Optional[Path] = None,
                 cache_ttl: int = 3600,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = float(backoff_base)
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.cache_ttl = int(cache_ttl)
        self._sleep = sleep
        self._counter_lock = threading.Lock()
        self._network_requests = 0

    @property
    def network_requests(self) -> int:
        with self._counter_lock:
            return self._network_requests

    # on-disk cache
    @staticmethod
    def _cache_key_for(url: str) -> str:
        return "meta-" + hashlib.sha1(url.encode("utf-8")).hexdigest() + ".json"

    def _save_cache(self, url: str, text: str) -> None:
        if not self.cache_dir:
            return
        data = {"timestamp": int(time.time()), "url": url, "payload": text}
        atomic_write(self.cache_dir / self._cache_key_for(url),
                     json.dumps(data, ensure_ascii=False).encode("utf-8"))

    def _load_cache(self, url: str, ttl: Optional[int]) -> Optional[str]:
        """Cached body for `url`; `ttl=None` accepts any age (stale fallback)."""
        if not self.cache_dir:
            return None
        fpath = self.cache_dir / self._cache_key_for(url)
        try:
            with open(fpath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.debug("Dropping corrupt metadata cache entry %s", fpath.name)
            fpath.unlink(missing_ok=True)
            return None
        ts = int(data.get("timestamp") or 0)
        if ttl is not None and int(time.time()) - ts > ttl:
            return None
        return data.get("payload")

    def _request(self, url: str) -> requests.Response:
        with self._counter_lock:
            self._network_requests += 1
        return self.session.get(url, timeout=self.timeout)

    def get_text(self,
                 urls: Union[str, Sequence[str]],
                 *,
                 cache: bool = False,
                 ttl: Optional[int] = None,
                 validate: Optional[Callable[[str], None]] = None,
                 what: Optional[str] = None) -> str:
        """
        Fetch the body of the first candidate that answers.

        Parameters
        ----------
        urls : str | Sequence[str]
            Candidate URLs in priority order.
        cache : bool
            Read/write the on-disk cache (keyed by the first URL).
        ttl : Optional[int]
            Freshness window for this call (defaults to the client's TTL).
        validate : Optional[Callable[[str], None]]
            Raises ValueError if a body is unusable; that candidate then counts
            as failed for this pass.
        what : Optional[str]
            Human readable name of the resource for error messages.

        Returns
        -------
        str

        Raises
        ------
        MissingMetadataFailure
            Every candidate answered 404/410.
        NetworkFailure
            Candidates exhausted for any other reason.
        """
        candidates = [urls] if isinstance(urls, str) else [u for u in urls if u]
        if not candidates:
            raise ValueError("no candidate URLs")
        what = what or candidates[0]
        cache_url = candidates[0]
        if cache:
            cached = self._load_cache(cache_url, self.cache_ttl if ttl is None else ttl)
            if cached is not None:
                logger.debug("Metadata cache hit for %s", what)
                return cached

        endpoints: List[Tuple[str, str]] = []
        remaining = list(candidates)
        not_found = 0
        attempt = 0
        while remaining and attempt < self.max_retries:
            attempt += 1
            wait = 0.0
            for url in list(remaining):
                try:
                    resp = self._request(url)
                except requests.RequestException as exc:
                    endpoints.append((url, f"{type(exc).__name__}: {exc}"))
                    continue
                status = resp.status_code
                if status in (404, 410):
                    endpoints.append((url, f"HTTP {status}"))
                    remaining.remove(url)
                    not_found += 1
                    continue
                if status == 429:
                    wait = max(wait, parse_retry_after(resp.headers.get("Retry-After")))
                    endpoints.append((url, "HTTP 429"))
                    continue
                if status >= 500:
                    endpoints.append((url, f"HTTP {status}"))
                    continue
                if status >= 400:
                    endpoints.append((url, f"HTTP {status}"))
                    remaining.remove(url)
                    continue
                text = resp.text
                if validate is not None:
                    try:
                        validate(text)
                    except ValueError as exc:
                        endpoints.append((url, f"invalid body: {exc}"))
                        continue
                if cache:
                    self._save_cache(cache_url, text)
                logger.debug("Fetched %s from %s", what, endpoint_label(url))
                return text
            if remaining and attempt < self.max_retries:
                delay = max(wait, exponential_backoff(attempt, base=self.backoff_base))
                logger.warning("Retrying %s in %.2fs (attempt %d/%d)", what, delay, attempt + 1, self.max_retries)
                self._sleep(delay)

        if cache:
            stale = self._load_cache(cache_url, None)
            if stale is not None:
                logger.warning("Serving stale cached copy of %s; upstream unavailable", what)
                return stale

        if not remaining and not_found == len(candidates):
            raise MissingMetadataFailure(f"{what} does not exist upstream", 404,
                                         context={"url": candidates[0]})
        raise NetworkFailure(f"Could not fetch {what}", endpoints=endpoints, context={"url": candidates[0]})

    def get_json(self, urls: Union[str, Sequence[str]], **kwargs) -> Any:
        """
        Same as get_text() but decodes JSON; a candidate returning malformed
        JSON is treated as failed for that pass.
        """
        def _validate(text: str) -> None:
            try:
                json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueError(str(exc)) from exc

        return json.loads(self.get_text(urls, validate=_validate, **kwargs))

    def get_text_optional(self, urls: Union[str, Sequence[str]], **kwargs) -> Optional[str]:
        """get_text() returning None when the resource does not exist upstream."""
        try:
            return self.get_text(urls, **kwargs)
        except MissingMetadataFailure:
            return None
