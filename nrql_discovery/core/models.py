"""Execution tiers and account capability profiles.

The capability profile is a read-only value produced once per session by the
capability prober and handed to every component that needs it. Nothing reads
it from module state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from nrql_discovery.constants import (
    DEFAULT_RESULT_LIMIT,
    EXTENDED_RESULT_LIMIT,
    LONG_RUNNING_MAX_DURATION,
    SYNC_MAX_DURATION,
    SYNC_MAX_DURATION_EXTENDED,
)


class ExecutionTier(StrEnum):
    """Backend execution modes, ordered by how long a query may run."""

    SYNC = "sync"
    LONG_RUNNING = "long_running"
    ASYNC = "async"


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class CapabilityProfile:
    """What the account is entitled to, as measured by probing.

    ``coerce`` is the single place where an unsupported tier is downgraded,
    so every caller shares the same fallback rule: anything the account
    cannot run becomes a synchronous query.
    """

    sync_max_duration: float = SYNC_MAX_DURATION
    supports_long_running: bool = False
    long_running_max_duration: float = 0.0
    supports_async: bool = False
    extended_limits: bool = False
    probed: bool = False

    def __post_init__(self) -> None:
        if self.sync_max_duration <= 0:
            raise ValueError("sync_max_duration must be positive")
        if self.supports_long_running and self.long_running_max_duration <= 0:
            raise ValueError(
                "long_running_max_duration must be positive when long-running "
                "queries are supported"
            )

    @classmethod
    def conservative(cls, *, probed: bool = False) -> CapabilityProfile:
        """Free-tier assumptions used when probing fails or is skipped."""
        return cls(probed=probed)

    @classmethod
    def entitled(
        cls, *, supports_async: bool = True, extended_limits: bool = True
    ) -> CapabilityProfile:
        """Profile of an account with extended query durations."""
        return cls(
            sync_max_duration=SYNC_MAX_DURATION_EXTENDED,
            supports_long_running=True,
            long_running_max_duration=LONG_RUNNING_MAX_DURATION,
            supports_async=supports_async,
            extended_limits=extended_limits,
            probed=True,
        )

    @property
    def result_limit(self) -> int:
        return EXTENDED_RESULT_LIMIT if self.extended_limits else DEFAULT_RESULT_LIMIT

    def supports(self, tier: ExecutionTier) -> bool:
        if tier is ExecutionTier.SYNC:
            return True
        if tier is ExecutionTier.LONG_RUNNING:
            return self.supports_long_running
        return self.supports_async

    def coerce(self, tier: ExecutionTier) -> ExecutionTier:
        """Return ``tier`` if supported, otherwise the synchronous tier."""
        return tier if self.supports(tier) else ExecutionTier.SYNC

    def max_duration(self, tier: ExecutionTier) -> float:
        """Server-side time budget for ``tier`` after coercion."""
        tier = self.coerce(tier)
        if tier is ExecutionTier.LONG_RUNNING:
            return self.long_running_max_duration
        return self.sync_max_duration

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilityProfile:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
