from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable
import os
import time


@dataclass(frozen=True)
class Clock:
    now: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep


@dataclass(frozen=True)
class RetryPolicy:
    timeout_seconds: float
    interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

    def poll(self, predicate: Callable[[], bool], clock: Clock | None = None) -> bool:
        """Call ``predicate`` until it returns True or the timeout elapses.

        The predicate is always evaluated at least once, and once more after the
        deadline has passed so a late success is not reported as a timeout.
        """
        clock = clock or Clock()
        deadline = clock.now() + self.timeout_seconds
        while True:
            if predicate():
                return True
            if clock.now() >= deadline:
                return False
            clock.sleep(self.interval_seconds)


def _env_str(name: str, default: str) -> Callable[[], str]:
    return lambda: os.getenv(name, default)


def _env_int(name: str, default: int) -> Callable[[], int]:
    return lambda: int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> Callable[[], float]:
    return lambda: float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class RestoreConfig:
    """Timeouts and Velero settings; defaults are read from the environment on construction."""

    velero_namespace: str = field(default_factory=_env_str("VELERO_NAMESPACE", "storage"))
    workload_delete_timeout_seconds: int = field(default_factory=_env_int("VPR_WORKLOAD_DELETE_TIMEOUT_SECONDS", 120))
    pod_delete_timeout_seconds: int = field(default_factory=_env_int("VPR_POD_DELETE_TIMEOUT_SECONDS", 60))
    pod_grace_period_seconds: int = field(default_factory=_env_int("VPR_POD_GRACE_PERIOD_SECONDS", 30))
    claim_delete_timeout_seconds: int = field(default_factory=_env_int("VPR_CLAIM_DELETE_TIMEOUT_SECONDS", 30))
    pod_termination_timeout_seconds: int = field(
        default_factory=_env_int("VPR_POD_TERMINATION_TIMEOUT_SECONDS", 60)
    )
    poll_interval_seconds: float = field(default_factory=_env_float("VPR_POLL_INTERVAL_SECONDS", 2))
    velero_wait_timeout_seconds: int = field(default_factory=_env_int("VPR_VELERO_WAIT_TIMEOUT_SECONDS", 3600))
    backup_ttl: str = field(default_factory=_env_str("BACKUP_TTL", "720h"))
    backup_storage_location: str = field(default_factory=_env_str("BACKUP_STORAGE_LOCATION", "default"))
    clock: Clock = field(default_factory=Clock)

    def controller_delete_policy(self) -> RetryPolicy:
        return RetryPolicy(self.workload_delete_timeout_seconds, self.poll_interval_seconds)

    def pod_delete_policy(self) -> RetryPolicy:
        return RetryPolicy(self.pod_delete_timeout_seconds, self.poll_interval_seconds)

    def claim_delete_policy(self) -> RetryPolicy:
        return RetryPolicy(self.claim_delete_timeout_seconds, self.poll_interval_seconds)

    def pod_termination_policy(self) -> RetryPolicy:
        return RetryPolicy(self.pod_termination_timeout_seconds, self.poll_interval_seconds)

    def velero_wait_policy(self) -> RetryPolicy:
        return RetryPolicy(self.velero_wait_timeout_seconds, max(self.poll_interval_seconds, 5.0))
