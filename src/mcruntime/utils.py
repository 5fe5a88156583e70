from __future__ import annotations

import os
import re
import json
import time
import random
import hashlib
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import *

import requests
from packaging import version
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__all__ = [
    "logger_setup",
    "session_factory",
    "exponential_backoff",
    "parse_retry_after",
    "file_digest",
    "sha1_sum",
    "fingerprint_from_bytes",
    "stable_json_hash",
    "parse_version",
    "utc_now_iso",
    "utc_stamp",
]

DEFAULT_USER_AGENT = "mcruntime/0.1 (+https://github.com/mcruntime/mcruntime)"

_HASH_CHUNK = 1024 * 1024


def logger_setup(name: str,
                 level: int = logging.INFO,
                 *,
                 log_to_file: Optional[str] = None,
                 file_level: Optional[int] = None,
                 fmt: str = "%(asctime)s %(name)s %(levelname)s: %(message)s",
                 datefmt: str = "%Y-%m-%d %H:%M:%S") -> logging.Logger:
    """
    Create and return a configured logger for a host application.

    The engine modules only call ``logging.getLogger(__name__)``; handlers are
    installed here, once per logger name.

    Parameters
    ----------
    name : str
        Logger name (usually "mcruntime").
    level : int
        Logging level for the console handler.
    log_to_file : Optional[str]
        If provided, path of a file to also log to (created if missing).
    file_level : Optional[int]
        Level for the file handler (defaults to `level`).
    fmt : str
        Log message format string.
    datefmt : str
        Date format used by the formatter.

    Returns
    -------
    logging.Logger

    Example
    -------
    >>> logger = logger_setup("mcruntime", level=logging.DEBUG, log_to_file="mcruntime.log")
    >>> logger.info("ready")
    """
    logger = logging.getLogger(name)
    logger.setLevel(min(level, file_level if file_level is not None else level))

    # Avoid adding handlers repeatedly
    if not getattr(logger, "_mcruntime_setup_done", False):
        formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

        if log_to_file:
            os.makedirs(os.path.dirname(os.path.abspath(log_to_file)), exist_ok=True)
            fh = logging.FileHandler(log_to_file, encoding="utf-8")
            fh.setLevel(file_level if file_level is not None else level)
            fh.setFormatter(formatter)
            logger.addHandler(fh)

        logger._mcruntime_setup_done = True

    return logger


def session_factory(user_agent: Optional[str] = None,
                    *,
                    pool_maxsize: int = 16,
                    pool_connections: int = 16,
                    max_retries: int = 0,
                    backoff_factor: float = 0.0,
                    status_forcelist: Optional[Iterable[int]] = (500, 502, 503, 504),
                    default_headers: Optional[Dict[str, str]] = None) -> requests.Session:
    """
    Create a configured requests.Session shared by the metadata client and the
    download engine.

    Parameters
    ----------
    user_agent : Optional[str]
        User-Agent string. If None, DEFAULT_USER_AGENT is used.
    pool_maxsize : int
        Max connection pool size per host. Should be at least the largest
        download concurrency, otherwise urllib3 discards connections.
    pool_connections : int
        Number of per-host pools to cache.
    max_retries : int
        Connection-level retries handled by urllib3.Retry. The engine retries
        at the request level itself, so this is 0 by default.
    backoff_factor : float
        Backoff factor for urllib3.Retry.
    status_forcelist : Iterable[int]
        HTTP statuses that trigger a urllib3 retry (when max_retries > 0).
    default_headers : Optional[Dict[str,str]]
        Additional headers merged into session.headers.

    Returns
    -------
    requests.Session
    """
    session = requests.Session()

    headers = {"User-Agent": user_agent or DEFAULT_USER_AGENT}
    if default_headers:
        headers.update(default_headers)
    session.headers.update(headers)

    if max_retries and max_retries > 0:
        retry = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=tuple(status_forcelist or ()),
            raise_on_status=False,
            respect_retry_after_header=True,
            allowed_methods=frozenset(["GET", "HEAD"]),
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=pool_connections, pool_maxsize=pool_maxsize)
    else:
        adapter = HTTPAdapter(pool_connections=pool_connections, pool_maxsize=pool_maxsize)

    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def exponential_backoff(attempt: int, base: float = 0.5, factor: float = 2.0, max_interval: float = 30.0) -> float:
    """
    Calculate an exponential backoff delay time in seconds.

    Parameters
    ----------
    attempt : int
        Current retry attempt number (1 for first retry).
    base : float
        Base delay in seconds for the first retry attempt.
    factor : float
        Multiplicative factor applied each attempt.
    max_interval : float
        Upper bound for the delay.

    Returns
    -------
    float
        Delay in seconds, with +/-10% jitter.

    Raises
    ------
    ValueError
        If `attempt` < 1 or parameters are invalid.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base < 0 or factor <= 0 or max_interval <= 0:
        raise ValueError("base, factor and max_interval must be positive numbers")

    raw = base * (factor ** (attempt - 1))
    delay = min(raw, max_interval)

    jitter_amount = delay * 0.10
    jitter = (random.random() * 2 - 1) * jitter_amount
    return float(round(max(0.0, delay + jitter), 4))


def parse_retry_after(value: Optional[Union[str, int, float]]) -> float:
    """
    Parse an HTTP 'Retry-After' header value and return the delay in seconds.

    Supports delta-seconds and HTTP-date forms; anything else yields 0.0.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    s = str(value).strip()
    if s.isdigit():
        return float(int(s))
    try:
        dt = parsedate_to_datetime(s)
    except (TypeError, ValueError, IndexError):
        return 0.0
    if dt is None:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, dt.timestamp() - time.time())


def file_digest(path: Union[str, os.PathLike], algorithm: str = "sha1", chunk_size: int = _HASH_CHUNK) -> str:
    """
    Compute the hex digest of a file, reading it in chunks.

    Parameters
    ----------
    path : str | PathLike
        File to hash.
    algorithm : str
        Any algorithm name accepted by ``hashlib.new`` (sha1, sha256, md5 ...).
    chunk_size : int
        Read size in bytes.

    Returns
    -------
    str
        Lower-case hex digest.

    Raises
    ------
    OSError
        If the file cannot be read.
    """
    h = hashlib.new(algorithm.lower())
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def sha1_sum(path: Union[str, os.PathLike]) -> str:
    return file_digest(path, "sha1")


def fingerprint_from_bytes(data: bytes, algorithm: str = "sha1") -> str:
    """Hex digest of an in-memory payload."""
    h = hashlib.new(algorithm.lower())
    h.update(data)
    return h.hexdigest()


def stable_json_hash(doc: Any, algorithm: str = "sha1") -> str:
    """
    Hash a JSON-compatible document independently of key order.

    Two documents that compare equal after ``json.loads`` always hash the same.
    """
    payload = json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return fingerprint_from_bytes(payload.encode("utf-8"), algorithm)


_VERSION_CLEAN = re.compile(r"[^0-9A-Za-z.+\-]")


def parse_version(ver_str: str) -> Optional[version.Version]:
    """
    Parse a version string with ``packaging.version``.

    Returns None when the string is not PEP 440 compatible (e.g. "23w14a").
    Leading "v" and stray characters are tolerated.
    """
    if not ver_str:
        return None
    text = _VERSION_CLEAN.sub("", str(ver_str).strip().lstrip("vV"))
    try:
        return version.Version(text)
    except version.InvalidVersion:
        return None


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def utc_stamp() -> str:
    """Sortable UTC timestamp for file names, millisecond precision (20240101-120000-123)."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y%m%d-%H%M%S-") + f"{now.microsecond // 1000:03d}"
