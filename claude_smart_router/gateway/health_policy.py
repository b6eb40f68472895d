from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class HealthKey:
    endpoint_index: int
    source_index: int = 0

    def __str__(self) -> str:
        return f"{self.endpoint_index}-{self.source_index}"

    @classmethod
    def parse(cls, value: str) -> HealthKey:
        endpoint, _, source = value.partition("-")
        return cls(endpoint_index=int(endpoint), source_index=int(source or 0))


@dataclass(slots=True, frozen=True)
class HealthRecord:
    failures: int = 0
    last_failure_at: float = 0.0
    in_cooldown: bool = False

    @property
    def is_zero(self) -> bool:
        return self.failures == 0 and not self.in_cooldown


HEALTHY = HealthRecord()


@dataclass(slots=True)
class HealthPolicyConfig:
    cooldown_seconds: float = 60.0
    failure_threshold: int = 3


class HealthPolicy:
    """Availability and transition rules for one endpoint/source health record.

    Records are immutable; every transition returns a new record. Checking
    availability never clears the cooldown flag, so a request let through after
    the window elapses is a probe: a success resets the record, a failure re-arms
    the window from the new failure time.
    """

    def __init__(self, config: HealthPolicyConfig) -> None:
        self._config = config

    @property
    def config(self) -> HealthPolicyConfig:
        return self._config

    def is_available(self, record: HealthRecord, now: float) -> bool:
        if not record.in_cooldown:
            return True
        return now - record.last_failure_at >= self._config.cooldown_seconds

    def record_failure(self, record: HealthRecord, now: float) -> HealthRecord:
        failures = record.failures + 1
        return HealthRecord(
            failures=failures,
            last_failure_at=now,
            in_cooldown=record.in_cooldown
            or failures >= self._config.failure_threshold,
        )

    def record_success(self, record: HealthRecord) -> HealthRecord:
        if record.failures > 0 or record.in_cooldown:
            return HEALTHY
        return record
