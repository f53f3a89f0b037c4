from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import time
from typing import Callable, Iterable

BYTES_PER_MEGABYTE = 1_048_576
JOB_POLL_INTERVAL_SECONDS = 5
JOB_MIN_ATTEMPTS = 6
JOB_RUNTIME_HEADROOM = 1.5

# Roughly one minute for a claim to bind before giving up.
CLAIM_BOUND_SCHEDULE: tuple[float, ...] = (1, 2, 2, 4, 4, 4, 8, 8, 8, 8, 8)


class CheckResult(Enum):
    DONE = "done"
    FAILED = "failed"
    PENDING = "pending"


class PollStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class CheckOutcome:
    result: CheckResult
    reason: str = ""


@dataclass(frozen=True)
class PollOutcome:
    status: PollStatus
    attempts: int
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is PollStatus.SUCCESS


Check = Callable[[], "CheckResult | CheckOutcome"]


def poll(
    schedule: Iterable[float],
    check: Check,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome:
    """Run ``check`` after each scheduled wait until it reports a terminal result.

    There is no check at time zero: every attempt is preceded by a sleep of the
    next duration in ``schedule``. Exceptions raised by ``check`` propagate.
    """
    attempts = 0
    for delay in schedule:
        sleep(delay)
        attempts += 1
        outcome = check()
        if isinstance(outcome, CheckResult):
            outcome = CheckOutcome(result=outcome)

        if outcome.result is CheckResult.DONE:
            return PollOutcome(status=PollStatus.SUCCESS, attempts=attempts, reason=outcome.reason)
        if outcome.result is CheckResult.FAILED:
            return PollOutcome(status=PollStatus.FAILURE, attempts=attempts, reason=outcome.reason)

    return PollOutcome(status=PollStatus.TIMED_OUT, attempts=attempts)


def estimate_runtime_seconds(total_bytes: int, transfer_rate_mbps: float) -> float:
    if transfer_rate_mbps <= 0:
        raise ValueError("transfer_rate_mbps must be positive")
    return total_bytes / (transfer_rate_mbps * BYTES_PER_MEGABYTE)


def job_completion_attempts(estimated_runtime_seconds: float) -> int:
    budget = math.ceil((estimated_runtime_seconds * JOB_RUNTIME_HEADROOM) / JOB_POLL_INTERVAL_SECONDS)
    return max(JOB_MIN_ATTEMPTS, budget)


def job_completion_schedule(total_bytes: int, transfer_rate_mbps: float) -> tuple[float, ...]:
    attempts = job_completion_attempts(estimate_runtime_seconds(total_bytes, transfer_rate_mbps))
    return (JOB_POLL_INTERVAL_SECONDS,) * attempts
