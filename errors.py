# errors.py
"""Error taxonomy.

Translation errors abort a single object, rule or listener and become a
Diagnostic. Apply errors abort the whole pass. Platform errors are classified
into a RetryDecision by ``classify``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


class TranslationError(Exception):
    """Raised while turning one input object into IR; never aborts a pass."""


class InvalidAnnotation(TranslationError):
    def __init__(self, name: str, value: str, reason: str = ""):
        self.name = name
        self.value = value
        msg = f"invalid value {value!r} for annotation {name!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTrafficPolicy(TranslationError, ValueError):
    pass


class BackendResolutionError(TranslationError):
    pass


class RefNotPermitted(TranslationError):
    pass


class InvalidTLSConfig(TranslationError):
    pass


class UnsupportedFilter(TranslationError):
    pass


class NotFoundError(LookupError):
    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class PlatformError(Exception):
    """A non-success response from the platform or the API server.

    ``code`` is the numeric part of an ERR_NGROK_<code> identifier when the
    response carried one.
    """

    def __init__(self, status_code: int, message: str = "", code: Optional[int] = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        label = f"ERR_NGROK_{code} " if code is not None else ""
        super().__init__(f"{label}status={status_code}: {message}".strip())


class ApplyError(Exception):
    """A create/update/delete failed; the pass stops here."""

    def __init__(self, op: str, kind: str, name: str, cause: BaseException):
        self.op = op
        self.kind = kind
        self.name = name
        self.cause = cause
        super().__init__(f"error during {op} of {kind} {name!r}: {cause}")


class StatusUpdateError(Exception):
    """The mutation took effect but recording its status did not."""

    def __init__(self, kind: str, name: str, cause: BaseException):
        self.kind = kind
        self.name = name
        self.cause = cause
        super().__init__(f"{kind} {name!r} was changed but its status could not be updated: {cause}")


class DomainStillCreating(Exception):
    def __init__(self, domains):
        self.domains = sorted(domains)
        super().__init__(f"not all domains ready yet: {', '.join(self.domains)}")


class SyncCancelled(Exception):
    pass


@dataclass(frozen=True)
class Diagnostic:
    owner: str
    message: str

    def __str__(self) -> str:
        return f"{self.owner}: {self.message}"


class Diagnostics(list):
    """Translation problems collected over one pass, each also logged as it is reported."""

    def report(self, owner, message: str) -> None:
        diag = Diagnostic(str(owner), str(message))
        logger.warning(f"[translate] {diag}")
        self.append(diag)

    def for_owner(self, owner) -> list:
        return [d for d in self if d.owner == str(owner)]


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    after: float = 0.0


TOO_MANY_REQUESTS_RETRY = 60.0

# ERR_NGROK codes that are client errors but clear up on their own
KNOWN_RETRY_CODES = {
    446: 30.0,    # domain still attached to an edge
    511: 30.0,    # dangling CNAME being cleaned up by another controller
    7117: 10.0,   # domain not found yet
    18016: 10.0,  # agent/cloud endpoint binding race
    18017: 10.0,
}


def _unwrap(err: BaseException) -> BaseException:
    while isinstance(err, ApplyError):
        err = err.cause
    return err


def classify(err: BaseException) -> RetryDecision:
    err = _unwrap(err)
    if isinstance(err, DomainStillCreating):
        return RetryDecision(True, 10.0)
    if isinstance(err, StatusUpdateError):
        return RetryDecision(True, 10.0)
    if isinstance(err, PlatformError):
        if err.code is not None and err.code in KNOWN_RETRY_CODES:
            return RetryDecision(True, KNOWN_RETRY_CODES[err.code])
        if err.status_code >= 500:
            return RetryDecision(True, 0.0)
        if err.status_code == 429:
            return RetryDecision(True, TOO_MANY_REQUESTS_RETRY)
        if 400 <= err.status_code < 500:
            return RetryDecision(False)
    return RetryDecision(True, 0.0)
