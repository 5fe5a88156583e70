"""
exceptions.py

Centralized exception types for the runtime engine.

Every failure the engine surfaces derives from RuntimeEngineError. Each error
carries an optional numeric code, a small context mapping (operation, url,
path, instance id ...) and an optional remediation hint, so callers can show a
useful message without digging into the original low-level exception (which is
always chained with ``raise ... from exc``).
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple


class RuntimeEngineError(Exception):
    """
    Base class for all engine-specific exceptions.

    Attributes
    ----------
    message: str
        Human readable error message.
    code: Optional[int]
        HTTP status code or internal error code if applicable.
    context: Dict[str, Any]
        Operation context (e.g. ``{"op": "download", "path": "..."}``).
    hint: Optional[str]
        Short remediation hint for the user.
    """

    def __init__(self,
                 message: str,
                 code: Optional[int] = None,
                 *,
                 context: Optional[Dict[str, Any]] = None,
                 hint: Optional[str] = None):
        self.message = message
        self.code = code
        self.context = dict(context or {})
        self.hint = hint
        super().__init__(self.__str__())

    def __str__(self) -> str:
        base = f"[{self.__class__.__name__}] {self.message}"
        if self.code is not None:
            base += f" (code={self.code})"
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base += f" [{ctx}]"
        return base

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} code={self.code!r} message={self.message!r}>"


class NetworkFailure(RuntimeEngineError):
    """
    All candidate endpoints for a resource failed.

    ``endpoints`` lists ``(url, reason)`` for every endpoint that was tried, in
    the order they were tried.
    """

    def __init__(self,
                 message: str,
                 code: Optional[int] = None,
                 *,
                 endpoints: Optional[Iterable[Tuple[str, str]]] = None,
                 context: Optional[Dict[str, Any]] = None,
                 hint: Optional[str] = None):
        self.endpoints: List[Tuple[str, str]] = list(endpoints or [])
        super().__init__(message, code, context=context,
                         hint=hint or "Check your connection or try again later.")

    def __str__(self) -> str:
        base = super().__str__()
        if self.endpoints:
            tried = "; ".join(f"{url} -> {reason}" for url, reason in self.endpoints[-8:])
            base += f" tried: {tried}"
        return base


class IntegrityFailure(RuntimeEngineError):
    """Hash mismatch, size mismatch, corrupt archive or missing structural marker."""


class MissingMetadataFailure(RuntimeEngineError):
    """A version or loader version does not exist upstream, or a document lacks a required field."""


class LoaderInstallFailure(RuntimeEngineError):
    """Installer process failed, timed out, or produced no discoverable profile."""


class ValidationFailure(RuntimeEngineError):
    """Pre-flight validation found failing required checks. ``report`` holds the full result."""

    def __init__(self, message: str, report: Any = None, **kwargs):
        self.report = report
        super().__init__(message, **kwargs)


class ProcessLaunchFailure(RuntimeEngineError):
    """The Java process could not be spawned."""


class RuntimeCrash(RuntimeEngineError):
    """
    The game exited abnormally and automatic escalation is exhausted.

    ``diagnostics`` holds the LoaderCrashDiagnostic objects recorded during the
    session and ``artifacts`` the paths written for them.
    """

    def __init__(self, message: str, *, diagnostics: Optional[List[Any]] = None,
                 artifacts: Optional[List[str]] = None, **kwargs):
        self.diagnostics = list(diagnostics or [])
        self.artifacts = list(artifacts or [])
        super().__init__(message, **kwargs)

    def __str__(self) -> str:
        base = super().__str__()
        if self.artifacts:
            base += f" diagnostics: {'; '.join(self.artifacts)}"
        return base


class RepairFailure(RuntimeEngineError):
    """A repair step could not complete."""


class InstanceBusyError(RuntimeEngineError):
    """Another operation already holds the instance lock."""


class FileOperationError(RuntimeEngineError):
    """Filesystem operation failed (write, replace, unpack, remove)."""


class ConfigurationError(RuntimeEngineError):
    """Engine configuration is invalid or incomplete."""


def map_http_status(status_code: int, message: str = "", url: Optional[str] = None) -> NetworkFailure:
    """
    Convert an HTTP status code + message into a NetworkFailure.

    Parameters
    ----------
    status_code : int
        HTTP status code returned by the server.
    message : str
        Response reason or short explanation.
    url : Optional[str]
        URL that produced the status; recorded as the single tried endpoint.

    Returns
    -------
    NetworkFailure
    """
    if status_code == 404 or status_code == 410:
        text = message or "Not Found"
    elif status_code == 429:
        text = message or "Rate Limited"
    elif status_code in (401, 403):
        text = message or "Access denied"
    elif 500 <= status_code <= 599:
        text = message or "Server Error"
    else:
        text = message or f"HTTP {status_code}"
    endpoints = [(url, f"HTTP {status_code}")] if url else []
    ctx = {"url": url} if url else None
    return NetworkFailure(text, status_code, endpoints=endpoints, context=ctx)


__all__ = [
    "RuntimeEngineError",
    "NetworkFailure",
    "IntegrityFailure",
    "MissingMetadataFailure",
    "LoaderInstallFailure",
    "ValidationFailure",
    "ProcessLaunchFailure",
    "RuntimeCrash",
    "RepairFailure",
    "InstanceBusyError",
    "FileOperationError",
    "ConfigurationError",
    "map_http_status",
]
