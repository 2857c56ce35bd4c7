"""Error taxonomy for board operations."""

from __future__ import annotations


class BoardError(Exception):
    """Base class for errors reported back to board callers."""


class ValidationError(BoardError):
    """Request rejected before any store call; carries every reason found."""

    def __init__(self, reasons: list[str] | str) -> None:
        if isinstance(reasons, str):
            reasons = [reasons]
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons))


class NotFoundError(BoardError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"task '{task_id}' not found")


class StoreError(BoardError):
    """The durable store failed. Details stay in the server log."""


class PartialReconciliationError(StoreError):
    """A bulk reconciliation stopped after some writes were already applied."""

    def __init__(self, message: str, applied: dict[str, int]) -> None:
        self.applied = dict(applied)
        super().__init__(message)

    @property
    def any_applied(self) -> bool:
        return any(self.applied.values())


class AuditWriteError(BoardError):
    """Writing an audit event failed. Never propagated past the audit log."""


class RateLimitError(BoardError):
    def __init__(self, category: str, retry_after: float) -> None:
        self.category = category
        self.retry_after = retry_after
        super().__init__(f"rate limit exceeded for {category}, retry in {retry_after:.0f}s")


class UpstreamError(BoardError):
    """A third-party API call made on behalf of the board failed."""
