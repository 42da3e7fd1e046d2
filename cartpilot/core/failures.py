"""Normalised failure taxonomy for purchase attempts.

Adapter-level problems are classified exactly once, at the boundary of the
checkout state machine, into a :class:`FailureKind`.  Everything downstream
(orchestrator, scheduler, notifier, stats) branches on the kind and never on
raw error text.

Retry policy by kind::

    kind                retryable  fatal  damages
    ------------------  ---------  -----  ------------------------
    no_resource         yes        -      -
    account_locked      yes        -      account (ban, scope)
    detection_blocked   yes        -      proxy (ban, scope)
    captcha             yes        -      proxy (ban, scope)
    timeout             yes        -      proxy (failure mark)
    transient_error     yes        -      proxy (failure mark)
    not_in_stock        -          yes    -
    stock_timeout       -          yes    -
    price_too_high      -          yes    -
    payment_declined    -          yes    -
    attempts_exhausted  -          yes    -
    cancelled           -          -      -

``cancelled`` is terminal but is not reported as an urgent failure.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

__all__ = [
    "FailureKind",
    "RETRYABLE_KINDS",
    "FATAL_KINDS",
    "is_retryable",
    "is_fatal",
]


class FailureKind(StrEnum):
    """Classification of why a purchase attempt did not succeed."""

    NO_RESOURCE = "no_resource"
    ACCOUNT_LOCKED = "account_locked"
    DETECTION_BLOCKED = "detection_blocked"
    CAPTCHA = "captcha"
    NOT_IN_STOCK = "not_in_stock"
    STOCK_TIMEOUT = "stock_timeout"
    PRICE_TOO_HIGH = "price_too_high"
    PAYMENT_DECLINED = "payment_declined"
    TIMEOUT = "timeout"
    TRANSIENT_ERROR = "transient_error"
    CANCELLED = "cancelled"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


RETRYABLE_KINDS: Final[frozenset[FailureKind]] = frozenset(
    {
        FailureKind.NO_RESOURCE,
        FailureKind.ACCOUNT_LOCKED,
        FailureKind.DETECTION_BLOCKED,
        FailureKind.CAPTCHA,
        FailureKind.TIMEOUT,
        FailureKind.TRANSIENT_ERROR,
    }
)

FATAL_KINDS: Final[frozenset[FailureKind]] = frozenset(
    {
        FailureKind.NOT_IN_STOCK,
        FailureKind.STOCK_TIMEOUT,
        FailureKind.PRICE_TOO_HIGH,
        FailureKind.PAYMENT_DECLINED,
        FailureKind.ATTEMPTS_EXHAUSTED,
    }
)


def is_retryable(kind: FailureKind) -> bool:
    """Return ``True`` if a task failing with *kind* may be requeued."""
    return kind in RETRYABLE_KINDS


def is_fatal(kind: FailureKind) -> bool:
    """Return ``True`` if *kind* permanently fails the task (urgent notify)."""
    return kind in FATAL_KINDS
