"""
Payment retry state machine.

A RetryHistory tracks the payment request attempts made for one order:

    PENDING  --publish attempt-->                     RETRYING
    RETRYING --confirmation-->                        SUCCESSFUL      (terminal)
    RETRYING --failure, attempts left-->              RETRYING        (next_retry_at recomputed)
    RETRYING --failure, attempts exhausted-->         FINALLY_FAILED  (terminal)

Answers are correlated on ``current_transaction_id``; answers to a
superseded attempt are stale and change nothing. Selection predicates
live here as plain functions so every store applies the same rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional

from purchase_saga.domain.clock import utc_now
from purchase_saga.domain.exceptions import InvalidRetryTransitionError

# Keeps 2 ** n inside float range for absurd attempt counts
_MAX_BACKOFF_EXPONENT = 32


class RetryStatus(str, Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SUCCESSFUL = "SUCCESSFUL"
    FINALLY_FAILED = "FINALLY_FAILED"


ACTIVE_STATUSES = frozenset({RetryStatus.PENDING, RetryStatus.RETRYING})
TERMINAL_STATUSES = frozenset({RetryStatus.SUCCESSFUL, RetryStatus.FINALLY_FAILED})


class AttemptResult(str, Enum):
    """Outcome recorded on a RetryAttempt once its answer arrives."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    TIMED_OUT = "TIMED_OUT"


class ResolutionOutcome(str, Enum):
    """What applying a confirmation or failure signal did to a history."""

    SUCCEEDED = "SUCCEEDED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    FINALLY_FAILED = "FINALLY_FAILED"
    DUPLICATE = "DUPLICATE"
    STALE = "STALE"

    @property
    def changed_state(self) -> bool:
        return self not in (ResolutionOutcome.DUPLICATE, ResolutionOutcome.STALE)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and exponential backoff schedule."""

    max_attempts: int = 5
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 1800.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def backoff(self, attempt_count: int) -> timedelta:
        """
        Delay before the attempt following ``attempt_count`` attempts.

        The base delay doubles per attempt and is capped at the ceiling:
        backoff(1) = base, backoff(2) = 2 * base, backoff(3) = 4 * base, ...

        Args:
            attempt_count: Attempts made so far

        Returns:
            timedelta: Delay to wait
        """
        exponent = min(max(attempt_count - 1, 0), _MAX_BACKOFF_EXPONENT)
        seconds = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))
        return timedelta(seconds=seconds)


@dataclass
class RetryAttempt:
    """One published payment request. Append-only; the outcome is written once."""

    attempt_number: int
    transaction_id: str
    attempted_at: datetime
    result: Optional[AttemptResult] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.result is not None

    def record_outcome(
        self, result: AttemptResult, error_message: Optional[str], now: datetime
    ) -> None:
        if self.is_resolved:
            raise InvalidRetryTransitionError(
                f"Attempt {self.attempt_number} already resolved as {self.result.value}"
            )
        self.result = result
        self.error_message = error_message
        self.completed_at = now


@dataclass
class RetryHistory:
    """Retry bookkeeping for one order. ``order_id`` is the key."""

    order_id: str
    original_transaction_id: str
    current_transaction_id: str
    max_attempts: int
    status: RetryStatus = RetryStatus.PENDING
    attempt_count: int = 0
    first_attempt_at: datetime = field(default_factory=utc_now)
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    final_failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    attempts: List[RetryAttempt] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        order_id: str,
        transaction_id: str,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> RetryHistory:
        """New PENDING history, ready for its first attempt immediately."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        now = now or utc_now()
        return cls(
            order_id=order_id,
            original_transaction_id=transaction_id,
            current_transaction_id=transaction_id,
            max_attempts=max_attempts,
            first_attempt_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)

    @property
    def current_attempt(self) -> Optional[RetryAttempt]:
        for attempt in reversed(self.attempts):
            if attempt.transaction_id == self.current_transaction_id:
                return attempt
        return None

    def record_attempt(
        self, transaction_id: str, policy: RetryPolicy, now: Optional[datetime] = None
    ) -> RetryAttempt:
        """
        Register a new payment request attempt.

        Args:
            transaction_id: Fresh transaction id the request is published under
            policy: Backoff schedule for next_retry_at
            now: Current time

        Returns:
            RetryAttempt: The appended attempt

        Raises:
            InvalidRetryTransitionError: If the history is terminal or out of attempts
        """
        if self.is_terminal:
            raise InvalidRetryTransitionError(
                f"Retry history for order {self.order_id} is {self.status.value}"
            )
        if self.attempt_count >= self.max_attempts:
            raise InvalidRetryTransitionError(
                f"Retry history for order {self.order_id} exhausted {self.max_attempts} attempts"
            )

        now = now or utc_now()
        attempt = RetryAttempt(
            attempt_number=self.attempt_count + 1,
            transaction_id=transaction_id,
            attempted_at=now,
        )
        self.attempts.append(attempt)
        self.attempt_count += 1
        self.current_transaction_id = transaction_id
        self.status = RetryStatus.RETRYING
        self.last_attempt_at = now
        self.next_retry_at = now + policy.backoff(self.attempt_count)
        self.updated_at = now
        return attempt

    def resolve_success(
        self, transaction_id: str, now: Optional[datetime] = None
    ) -> ResolutionOutcome:
        """Apply a payment confirmation for ``transaction_id``."""
        outcome = self._check_signal(transaction_id)
        if outcome is not None:
            return outcome

        now = now or utc_now()
        attempt = self.current_attempt
        if attempt is not None:
            attempt.record_outcome(AttemptResult.SUCCESS, None, now)
        self.status = RetryStatus.SUCCESSFUL
        self.next_retry_at = None
        self.updated_at = now
        return ResolutionOutcome.SUCCEEDED

    def resolve_failure(
        self,
        transaction_id: str,
        reason: str,
        policy: RetryPolicy,
        now: Optional[datetime] = None,
        result: AttemptResult = AttemptResult.FAILED,
    ) -> ResolutionOutcome:
        """
        Apply a failure signal (payment failure, publish failure or timeout).

        With attempts left the history stays RETRYING and next_retry_at is
        recomputed; otherwise it becomes FINALLY_FAILED.
        """
        outcome = self._check_signal(transaction_id)
        if outcome is not None:
            return outcome

        now = now or utc_now()
        attempt = self.current_attempt
        if attempt is not None:
            attempt.record_outcome(result, reason, now)
        self.updated_at = now

        if self.attempt_count >= self.max_attempts:
            self.status = RetryStatus.FINALLY_FAILED
            self.final_failure_reason = reason
            self.next_retry_at = None
            return ResolutionOutcome.FINALLY_FAILED

        self.status = RetryStatus.RETRYING
        self.next_retry_at = now + policy.backoff(self.attempt_count)
        return ResolutionOutcome.RETRY_SCHEDULED

    def schedule_immediate_retry(self, now: Optional[datetime] = None) -> bool:
        """Make an active history eligible on the next tick. Returns False if it cannot retry."""
        if self.is_terminal or self.attempt_count >= self.max_attempts:
            return False
        self.next_retry_at = None
        self.updated_at = now or utc_now()
        return True

    def _check_signal(self, transaction_id: str) -> Optional[ResolutionOutcome]:
        if self.is_terminal:
            return ResolutionOutcome.DUPLICATE
        if transaction_id != self.current_transaction_id:
            return ResolutionOutcome.STALE
        attempt = self.current_attempt
        if attempt is None:
            # Id assigned at order creation, never published
            return ResolutionOutcome.STALE
        if attempt.is_resolved:
            return ResolutionOutcome.DUPLICATE
        return None


def is_retryable(history: RetryHistory, now: datetime) -> bool:
    """Active, attempts left, and due (next_retry_at unset or reached)."""
    return (
        history.status in ACTIVE_STATUSES
        and history.attempt_count < history.max_attempts
        and (history.next_retry_at is None or history.next_retry_at <= now)
    )


def select_retryable(
    histories: Iterable[RetryHistory], now: datetime, limit: Optional[int] = None
) -> List[RetryHistory]:
    """Retryable histories, oldest first_attempt_at first."""
    selected = sorted(
        (h for h in histories if is_retryable(h, now)),
        key=lambda h: h.first_attempt_at,
    )
    return selected if limit is None else selected[:limit]


def is_stale(history: RetryHistory, older_than: datetime) -> bool:
    return history.status in ACTIVE_STATUSES and history.first_attempt_at < older_than


def select_stale(histories: Iterable[RetryHistory], older_than: datetime) -> List[RetryHistory]:
    return sorted(
        (h for h in histories if is_stale(h, older_than)),
        key=lambda h: h.first_attempt_at,
    )


def is_timed_out(history: RetryHistory, answered_before: datetime) -> bool:
    """Final attempt published before ``answered_before`` and still unanswered."""
    attempt = history.current_attempt
    return (
        history.status == RetryStatus.RETRYING
        and history.attempt_count >= history.max_attempts
        and history.last_attempt_at is not None
        and history.last_attempt_at <= answered_before
        and attempt is not None
        and not attempt.is_resolved
    )


def select_timed_out(
    histories: Iterable[RetryHistory], answered_before: datetime, limit: Optional[int] = None
) -> List[RetryHistory]:
    selected = sorted(
        (h for h in histories if is_timed_out(h, answered_before)),
        key=lambda h: h.first_attempt_at,
    )
    return selected if limit is None else selected[:limit]


def in_window(
    history: RetryHistory, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> bool:
    """created_at within [start, end]; open bounds when None."""
    if start is not None and history.created_at < start:
        return False
    if end is not None and history.created_at > end:
        return False
    return True


@dataclass(frozen=True)
class RetryStatistics:
    """Read-only aggregate over retry histories."""

    pending_count: int = 0
    retrying_count: int = 0
    successful_count: int = 0
    finally_failed_count: int = 0
    average_attempts: float = 0.0
    max_attempts: int = 0

    @classmethod
    def from_histories(cls, histories: Iterable[RetryHistory]) -> RetryStatistics:
        counts = {status: 0 for status in RetryStatus}
        attempt_counts: List[int] = []
        for history in histories:
            counts[history.status] += 1
            attempt_counts.append(history.attempt_count)
        return cls(
            pending_count=counts[RetryStatus.PENDING],
            retrying_count=counts[RetryStatus.RETRYING],
            successful_count=counts[RetryStatus.SUCCESSFUL],
            finally_failed_count=counts[RetryStatus.FINALLY_FAILED],
            average_attempts=(
                sum(attempt_counts) / len(attempt_counts) if attempt_counts else 0.0
            ),
            max_attempts=max(attempt_counts, default=0),
        )

    @property
    def total_count(self) -> int:
        return self.active_count + self.completed_count

    @property
    def active_count(self) -> int:
        return self.pending_count + self.retrying_count

    @property
    def completed_count(self) -> int:
        return self.successful_count + self.finally_failed_count

    @property
    def success_rate(self) -> float:
        if self.completed_count == 0:
            return 0.0
        return self.successful_count / self.completed_count

    @property
    def failure_rate(self) -> float:
        if self.completed_count == 0:
            return 0.0
        return self.finally_failed_count / self.completed_count
