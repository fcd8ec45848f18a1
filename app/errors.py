"""Error taxonomy shared by the classification and sync pipeline."""

from __future__ import annotations

from enum import Enum


class CanonSyncError(Exception):
    """Base class for all CanonSync domain errors."""


class ValidationError(CanonSyncError):
    """An incoming episode listing is malformed and was rejected wholesale."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class FetchErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    NETWORK = "network"
    PARSE_FAILURE = "parse_failure"


class FetchError(CanonSyncError):
    """The listing source could not produce a listing for a slug."""

    def __init__(self, kind: FetchErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class LibraryErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class LibraryServiceError(CanonSyncError):
    """A media-server call failed."""

    def __init__(
        self,
        kind: LibraryErrorKind,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def transient(self) -> bool:
        return self.kind is LibraryErrorKind.TRANSIENT


class ReconcileTransient(CanonSyncError):
    """Reconciliation hit a retryable failure (timeouts, 5xx responses)."""

    def __init__(self, message: str, *, collection_id: str | None = None) -> None:
        self.collection_id = collection_id
        super().__init__(message)


class ReconcileFatal(CanonSyncError):
    """Reconciliation cannot succeed without intervention; never retried.

    When raised part-way through applying a plan it carries what was already
    applied, so the run records the media server's real state.
    """

    def __init__(
        self,
        message: str,
        *,
        added: int = 0,
        removed: int = 0,
        failed: int = 0,
        collection_id: str | None = None,
    ) -> None:
        self.added = added
        self.removed = removed
        self.failed = failed
        self.collection_id = collection_id
        super().__init__(message)


class ReconcileCancelled(CanonSyncError):
    """Reconciliation stopped at a step boundary because cancellation was requested."""

    def __init__(
        self,
        message: str,
        *,
        added: int = 0,
        removed: int = 0,
        collection_id: str | None = None,
    ) -> None:
        self.added = added
        self.removed = removed
        self.collection_id = collection_id
        super().__init__(message)


class StoreUnavailable(CanonSyncError):
    """The persistent store cannot be reached at all."""


class LibraryNotConfigured(CanonSyncError):
    """No media server is configured, so matching and syncing are unavailable."""
