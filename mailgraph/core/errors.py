"""Error taxonomy for sync, extraction and job processing.

Workers decide retry behaviour by exception class:

- TransientError: retried with exponential backoff.
- RateLimitedError: rescheduled after the provider delay; does not consume
  an attempt (tracked in ``Job.rate_limit_hits``).
- AuthExpiredError: not retried; the account is flagged ``needs_reauth``.
- PermanentError: not retried at job level; single messages are quarantined.
- CursorExpiredError: the stored history cursor was rejected by the provider.
- InvariantViolation: a defect (e.g. duplicate-key collision); logged loudly,
  job moved to dead, worker keeps running.
- JobCancelled: the account was unlinked while the job ran.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for classified sync/job failures."""

    retryable: bool = True


class TransientError(SyncError):
    """Network blip, timeout or provider 5xx."""


class RateLimitedError(SyncError):
    """Provider asked us to slow down."""

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(message or f"Rate limited, retry after {self.retry_after:.0f}s")


class AuthExpiredError(SyncError):
    """Access could not be refreshed; the account must be re-linked."""

    retryable = False


class PermanentError(SyncError):
    """Malformed/unsupported input or a non-retryable provider rejection."""

    retryable = False

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CursorExpiredError(PermanentError):
    """Stored history cursor is too old or otherwise invalid."""

    def __init__(self, reason: str = "history cursor expired"):
        super().__init__(reason)


class InvariantViolation(SyncError):
    """A data invariant was violated; indicates a defect, not bad input."""

    retryable = False


class JobCancelled(Exception):
    """Raised at a page/batch boundary when the job's account was unlinked."""


class StaleStateError(SyncError):
    """Optimistic concurrency check lost the race; safe to retry."""
