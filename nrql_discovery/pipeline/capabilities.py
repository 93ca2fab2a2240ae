"""Entitlement detection for the account being discovered.

Each probe is a single governed query; a probe that fails for any reason marks
its capability unsupported and is not retried. The extended-duration probe
gates the other two: without it the account is treated as free tier.
"""

from __future__ import annotations

import asyncio
import logging

from nrql_discovery import constants as C
from nrql_discovery.client.nerdgraph import QueryBackend
from nrql_discovery.client.rate_governor import RateGovernor
from nrql_discovery.core.models import CapabilityProfile
from nrql_discovery.events import EventDispatcher, EventKind

logger = logging.getLogger(__name__)

EXTENDED_DURATION_PROBE = (
    "SELECT count(*) FROM Transaction SINCE 3 minutes ago UNTIL 2 minutes ago"
)
ASYNC_PROBE = "SELECT count(*) FROM Transaction SINCE 1 hour ago"
EXTENDED_LIMIT_PROBE = "SELECT count(*) FROM Transaction SINCE 1 hour ago LIMIT 5000"


class CapabilityProber:
    def __init__(
        self,
        backend: QueryBackend,
        governor: RateGovernor,
        *,
        probe_timeout: float = C.PROBE_CLIENT_TIMEOUT,
        events: EventDispatcher | None = None,
    ) -> None:
        self.backend = backend
        self.governor = governor
        self.probe_timeout = probe_timeout
        self._events = events or EventDispatcher()

    async def probe(self) -> CapabilityProfile:
        """Measure entitlements, falling back to the conservative profile."""
        if not await self._attempt("extended_duration", self._probe_extended_duration):
            profile = CapabilityProfile.conservative(probed=True)
        else:
            supports_async = await self._attempt("async", self._probe_async)
            extended_limits = await self._attempt(
                "extended_limits", self._probe_extended_limits
            )
            profile = CapabilityProfile.entitled(
                supports_async=supports_async, extended_limits=extended_limits
            )
        logger.info(
            "Capability probe complete: long_running=%s async=%s extended_limits=%s",
            profile.supports_long_running,
            profile.supports_async,
            profile.extended_limits,
        )
        self._events.emit(EventKind.CAPABILITIES_PROBED, **profile.to_dict())
        return profile

    async def _attempt(self, name: str, probe) -> bool:
        try:
            async with self.governor.slot(timeout=self.probe_timeout):
                async with asyncio.timeout(self.probe_timeout):
                    return await probe()
        except Exception as e:
            logger.debug("Capability probe '%s' failed: %s", name, e)
            return False

    async def _probe_extended_duration(self) -> bool:
        payload = await self.backend.run_extended_query(
            EXTENDED_DURATION_PROBE, timeout=C.PROBE_TIMEOUT
        )
        return payload is not None and "results" in payload

    async def _probe_async(self) -> bool:
        return bool(await self.backend.submit_async_query(ASYNC_PROBE))

    async def _probe_extended_limits(self) -> bool:
        payload = await self.backend.run_query(EXTENDED_LIMIT_PROBE)
        return payload is not None and "results" in payload
