"""Core payout logic."""
from .calculator import FeeBreakdown, FeeSchedule, calculate_payout, compute_fees
from .exceptions import (
    InvalidTransitionError,
    ForbiddenError,
    LockUnavailableError,
    NotFoundError,
    PayoutEngineError,
    RailError,
    RateLimitedError,
    ValidationError,
)

__all__ = [
    "FeeBreakdown",
    "FeeSchedule",
    "ForbiddenError",
    "InvalidTransitionError",
    "LockUnavailableError",
    "NotFoundError",
    "PayoutEngineError",
    "RailError",
    "RateLimitedError",
    "ValidationError",
    "calculate_payout",
    "compute_fees",
]
