"""Deterministic job failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.exc import OperationalError

from reward_pipeline.jobs.errors import (
    FatalJobError,
    PayloadValidationError,
    ProviderError,
    RetryableJobError,
    StageContractError,
)
from reward_pipeline.jobs.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.LOCK_CONTENTION,
        FailureClass.UNEXPECTED,
    },
)

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limited",
    "throttl",
    "429",
)
_LOCK_CONTENTION_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not obtain lock",
    "lock timeout",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "try again later",
)
_INVALID_PAYLOAD_PATTERNS: tuple[str, ...] = (
    "invalid payload",
    "malformed",
    "missing required",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Classify a handler or store exception into a deterministic retry class."""

    if isinstance(error, StageContractError):
        return _classified(FailureClass.INVARIANT_VIOLATION, "stage_contract")
    if isinstance(error, PayloadValidationError):
        return _classified(FailureClass.INVALID_PAYLOAD, "payload_validation")
    if isinstance(error, FatalJobError):
        return _classified(FailureClass.INVARIANT_VIOLATION, "fatal_job_error")
    if isinstance(error, ProviderError):
        return _classify_provider_error(error)
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_status_code(error.response.status_code, rule="http_status")
    if isinstance(error, httpx.TransportError):
        return _classified(FailureClass.TRANSIENT, "http_transport")

    haystack = str(error).lower()
    if isinstance(error, OperationalError):
        pattern = _first_match(haystack, _LOCK_CONTENTION_PATTERNS)
        if pattern is not None:
            return _classified(FailureClass.LOCK_CONTENTION, "database_lock", pattern)
        return _classified(FailureClass.TRANSIENT, "database_operational")
    if isinstance(error, RetryableJobError):
        pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
        if pattern is not None:
            return _classified(FailureClass.RATE_LIMITED, "retryable_rate_limit", pattern)
        return _classified(FailureClass.TRANSIENT, "retryable_job_error")

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.RATE_LIMITED, "rate_limit_message", pattern)
    pattern = _first_match(haystack, _LOCK_CONTENTION_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.LOCK_CONTENTION, "lock_contention_message", pattern)
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.TRANSIENT, "transient_message", pattern)
    pattern = _first_match(haystack, _INVALID_PAYLOAD_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.INVALID_PAYLOAD, "invalid_payload_message", pattern)

    return _classified(FailureClass.UNEXPECTED, "fallback_unexpected")


def _classify_provider_error(error: ProviderError) -> FailureClassification:
    if error.status_code is not None:
        classified = _classify_status_code(error.status_code, rule=f"{error.provider}_status")
        if classified.failure_class is not FailureClass.PROVIDER_REJECTED or not error.transient:
            return classified
    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return _classified(FailureClass.RATE_LIMITED, f"{error.provider}_rate_limit", pattern)
    if error.transient:
        return _classified(
            FailureClass.TRANSIENT,
            f"{error.provider}_transient",
            _first_match(haystack, _TRANSIENT_PATTERNS),
        )
    return _classified(FailureClass.PROVIDER_REJECTED, f"{error.provider}_rejected")


def _classify_status_code(status_code: int, *, rule: str) -> FailureClassification:
    if status_code == 429:  # noqa: PLR2004
        return _classified(FailureClass.RATE_LIMITED, rule, str(status_code))
    if status_code >= 500:  # noqa: PLR2004
        return _classified(FailureClass.TRANSIENT, rule, str(status_code))
    return _classified(FailureClass.PROVIDER_REJECTED, rule, str(status_code))


def _classified(
    failure_class: FailureClass,
    rule: str,
    pattern: str | None = None,
) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{rule}_{failure_class.value}",
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
