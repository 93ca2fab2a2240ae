import asyncio
import json

import pytest

from nrql_discovery.core.exceptions import CheckpointError
from nrql_discovery.discovery.progress import ProgressManager, describe_progress
from nrql_discovery.discovery.state import (
    METRICS,
    AttributeClassification,
    DiscoveryState,
    DiscoveryStatus,
    SchemaRecord,
)
from nrql_discovery.events import EventDispatcher, EventKind
from tests.fakes import FakeClock


def _state() -> DiscoveryState:
    state = DiscoveryState(status=DiscoveryStatus.RUNNING, phase="discover-metrics")
    state.mark_phase_complete("enumerate-schemas")
    state.mark_phase_complete("enumerate-schemas")
    state.schema_candidates = [{"name": "Transaction", "volume": 10, "priority": 100}]
    state.add_schema(
        SchemaRecord(
            "Transaction",
            volume=10,
            category="APM",
            attributes={
                "duration": AttributeClassification(
                    "duration", kind="numeric", data_type="float", statistics={"avg": 1.5}
                ),
                "broken": AttributeClassification("broken", skipped=True, error="boom"),
            },
            metadata={"entityCount": 2},
        )
    )
    state.discoveries[METRICS].append({"name": "system", "metrics": []})
    state.statistics.queries_by_tier = {"sync": 4}
    return state


@pytest.fixture
def clock():
    return FakeClock(start=1_700_000_000.0)


@pytest.mark.unit
def test_state_round_trips_through_dict():
    state = _state()

    restored = DiscoveryState.from_dict(json.loads(json.dumps(state.to_dict())))

    assert restored == state
    assert restored.completed_phases == ["enumerate-schemas"]
    assert restored.statistics.attributes_discovered == 1
    assert restored.schemas[0].numeric_attributes == ["duration"]


@pytest.mark.unit
def test_from_dict_tolerates_missing_sections_and_unknown_statistics():
    state = DiscoveryState.from_dict({"statistics": {"queries_issued": 3, "legacy": 1}})

    assert state.status is DiscoveryStatus.IDLE
    assert state.statistics.queries_issued == 3
    assert state.schemas == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_save_and_load_checkpoint(tmp_path, clock):
    listener_events = []

    class _Listener:
        def on_event(self, event):
            listener_events.append(event)

    manager = ProgressManager(
        tmp_path / "progress.json", clock=clock, events=EventDispatcher(_Listener())
    )

    await manager.save(_state())
    loaded = await ProgressManager(tmp_path / "progress.json", clock=clock).load()

    assert loaded == _state()
    document = json.loads((tmp_path / "progress.json").read_text())
    assert document["version"] == 1
    assert document["saved_at"] == clock.now
    (event,) = listener_events
    assert event.kind is EventKind.CHECKPOINT_SAVED
    assert event.data["phase"] == "discover-metrics"
    assert event.data["schemas"] == 1
    assert not list(tmp_path.glob("*.tmp"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_previous_checkpoints_are_kept_as_bounded_backups(tmp_path, clock):
    manager = ProgressManager(tmp_path / "progress.json", clock=clock, keep_backups=3)
    state = _state()

    for _ in range(5):
        await manager.save(state)
        clock.advance(1)

    backups = manager.backups()
    assert len(backups) == 3
    stamps = [int(p.name.split("backup-")[1].split(".")[0]) for p in backups]
    assert stamps == sorted(stamps, reverse=True)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unusable_checkpoints_start_fresh(tmp_path, clock):
    path = tmp_path / "progress.json"
    manager = ProgressManager(path, clock=clock, max_age_hours=24)

    assert await manager.load() is None

    await manager.save(_state())
    clock.advance(25 * 3600)
    assert await manager.load() is None

    path.write_text("{not json")
    assert await manager.load() is None

    path.write_text(json.dumps({"saved_at": clock.now}))
    assert await manager.load() is None

    path.write_text(json.dumps({"saved_at": clock.now, "state": {"status": "bogus"}}))
    assert await manager.load() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unwritable_checkpoint_raises(tmp_path, clock):
    target = tmp_path / "occupied"
    target.mkdir()
    manager = ProgressManager(target, clock=clock)

    with pytest.raises(CheckpointError):
        await manager.save(_state())


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resaving_an_unchanged_state_writes_the_same_document(tmp_path, clock):
    path = tmp_path / "progress.json"
    manager = ProgressManager(path, clock=clock)
    await manager.save(_state())
    first = path.read_text()

    clock.advance(30)
    await manager.save(await manager.load())

    assert path.read_text() == first

    changed = await manager.load()
    changed.phase = "discover-traces"
    await manager.save(changed)
    assert json.loads(path.read_text())["saved_at"] == clock.now


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unserializable_state_raises_and_keeps_last_checkpoint(tmp_path, clock):
    path = tmp_path / "progress.json"
    manager = ProgressManager(path, clock=clock)
    await manager.save(_state())
    before = path.read_text()
    state = _state()
    state.discoveries[METRICS].append({"name": "custom", "tags": {"a", "b"}})

    with pytest.raises(CheckpointError, match="JSON-serializable"):
        await manager.save(state)

    assert path.read_text() == before
    assert not list(tmp_path.glob("*.tmp"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_clear_removes_checkpoint(tmp_path, clock):
    manager = ProgressManager(tmp_path / "progress.json", clock=clock)
    await manager.save(_state())

    manager.clear()
    manager.clear()

    assert not (tmp_path / "progress.json").exists()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_named_snapshots(tmp_path, clock):
    manager = ProgressManager(tmp_path / "progress.json", clock=clock)
    first = await manager.create_snapshot(_state(), "before-metrics")
    clock.advance(5)
    await manager.create_snapshot(DiscoveryState(), "empty")
    (manager.snapshot_dir / "garbage.json").write_text("nope")

    snapshots = manager.list_snapshots()

    assert [s["name"] for s in snapshots] == ["empty", "before-metrics"]
    assert manager.load_snapshot(first) == _state()


@pytest.mark.unit
def test_list_snapshots_without_directory(tmp_path):
    assert ProgressManager(tmp_path / "progress.json").list_snapshots() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_auto_save_writes_periodically_and_stops(tmp_path):
    manager = ProgressManager(tmp_path / "progress.json", interval=0.01)
    state = _state()

    manager.start_auto_save(state)
    with pytest.raises(RuntimeError):
        manager.start_auto_save(state)
    await asyncio.sleep(0.05)
    await manager.stop_auto_save()
    await manager.stop_auto_save()

    assert (tmp_path / "progress.json").exists()


@pytest.mark.unit
def test_describe_progress():
    running = _state()
    progress = describe_progress(running, total_phases=8)

    assert progress["percentage"] == 12.5
    assert progress["message"] == "Running discover-metrics"
    assert progress["details"]["schemas"] == 1

    assert describe_progress(DiscoveryState(), 8)["message"] == "Not started"
    assert describe_progress(DiscoveryState(status=DiscoveryStatus.COMPLETED), 8)[
        "percentage"
    ] == 100.0
    failed = describe_progress(DiscoveryState(status=DiscoveryStatus.FAILED), 8)
    assert (failed["percentage"], failed["message"]) == (0.0, "Discovery failed")
