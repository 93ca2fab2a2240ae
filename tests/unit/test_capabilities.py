import pytest

from nrql_discovery.client.rate_governor import RateGovernor
from nrql_discovery.core.exceptions import NetworkError, QueryTimeoutError
from nrql_discovery.core.models import CapabilityProfile, ExecutionTier
from nrql_discovery.events import EventDispatcher, EventKind, RecordingListener
from nrql_discovery.pipeline.capabilities import (
    EXTENDED_DURATION_PROBE,
    EXTENDED_LIMIT_PROBE,
    CapabilityProber,
)
from tests.fakes import FakeBackend


class _NoAsyncBackend(FakeBackend):
    async def submit_async_query(self, nrql: str) -> str:
        self.calls.append(("submit_async_query", nrql))
        raise NetworkError("async endpoint unavailable")


# --- CapabilityProfile ---


@pytest.mark.unit
def test_conservative_profile_supports_only_sync():
    profile = CapabilityProfile.conservative()

    assert profile.sync_max_duration == 60
    assert profile.result_limit == 2000
    for tier in ExecutionTier:
        assert profile.coerce(tier) is ExecutionTier.SYNC
    assert profile.max_duration(ExecutionTier.LONG_RUNNING) == 60


@pytest.mark.unit
def test_entitled_profile_extends_durations_and_limits():
    profile = CapabilityProfile.entitled()

    assert profile.sync_max_duration == 120
    assert profile.long_running_max_duration == 600
    assert profile.result_limit == 5000
    assert profile.coerce(ExecutionTier.LONG_RUNNING) is ExecutionTier.LONG_RUNNING
    assert profile.coerce(ExecutionTier.ASYNC) is ExecutionTier.ASYNC
    assert profile.max_duration(ExecutionTier.LONG_RUNNING) == 600


@pytest.mark.unit
def test_unsupported_async_falls_back_to_sync():
    profile = CapabilityProfile.entitled(supports_async=False)
    assert profile.coerce(ExecutionTier.ASYNC) is ExecutionTier.SYNC


@pytest.mark.unit
def test_profile_validation():
    with pytest.raises(ValueError):
        CapabilityProfile(sync_max_duration=0)
    with pytest.raises(ValueError):
        CapabilityProfile(supports_long_running=True, long_running_max_duration=0)


@pytest.mark.unit
def test_profile_from_dict_ignores_unknown_keys():
    data = {**CapabilityProfile.entitled().to_dict(), "future_flag": True}
    assert CapabilityProfile.from_dict(data) == CapabilityProfile.entitled()


# --- CapabilityProber ---


@pytest.mark.unit
@pytest.mark.asyncio
async def test_probe_detects_full_entitlement():
    backend = FakeBackend()
    listener = RecordingListener()
    prober = CapabilityProber(
        backend, RateGovernor(100, 5), events=EventDispatcher(listener)
    )

    profile = await prober.probe()

    assert profile == CapabilityProfile.entitled()
    assert backend.queries("run_extended_query") == [EXTENDED_DURATION_PROBE]
    assert backend.queries("run_query") == [EXTENDED_LIMIT_PROBE]
    assert len(backend.queries("submit_async_query")) == 1
    (event,) = listener.of_kind(EventKind.CAPABILITIES_PROBED)
    assert event.data["supports_long_running"] is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_duration_probe_means_free_tier_and_no_further_probes():
    backend = FakeBackend().on("UNTIL 2 minutes ago", QueryTimeoutError("timed out"))
    prober = CapabilityProber(backend, RateGovernor(100, 5))

    profile = await prober.probe()

    assert profile == CapabilityProfile.conservative(probed=True)
    assert profile.probed is True
    assert len(backend.calls) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_each_probe_failure_only_disables_its_capability():
    backend = _NoAsyncBackend().on("LIMIT 5000", NetworkError("reset"))
    prober = CapabilityProber(backend, RateGovernor(100, 5))

    profile = await prober.probe()

    assert profile.supports_long_running is True
    assert profile.supports_async is False
    assert profile.extended_limits is False
    assert profile.result_limit == 2000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_probes_are_governed():
    backend = FakeBackend()
    governor = RateGovernor(100, 5)
    await CapabilityProber(backend, governor).probe()

    assert governor.stats()["granted"] == 3
    assert governor.in_flight == 0
