import gc

import pytest

from errors import BackendError, ConflictError, InvalidTransition, ValidationError
from models import CALLED, EMERGENCY, SKIPPED, WAITING, QueueDraft
from routing import TransferRouter
from session import PATCH, REFETCH, QueueSession

from conftest import at, entry_row


@pytest.fixture
def live(repo, sb, departments, flows):
    sb.tables["queue_entries"] = [
        entry_row("a", "LAB-001", minutes=0),
        entry_row("b", "LAB-002", minutes=4, priority=EMERGENCY),
        entry_row("c", "P-001", department="Pharmacy", minutes=1),
    ]
    s = QueueSession(repo, TransferRouter(repo, departments, flows))
    s.start()
    return s


def test_start_loads_and_subscribes(live, feeds):
    assert [e.id for e in live.entries] == ["a", "c", "b"]
    assert len(feeds) == 1 and feeds[0].started


def test_feed_changes_reach_the_cache(live, feeds):
    feeds[0].push("INSERT", entry_row("d", "LAB-003", minutes=9))
    feeds[0].push("UPDATE", dict(entry_row("a", "LAB-001"), status=CALLED, updated_at=at(30).isoformat()))
    feeds[0].push("DELETE", old={"id": "c"})
    assert live.pump() == 3
    assert [e.id for e in live.entries] == ["a", "b", "d"]
    assert live.cache.get("a").status == CALLED


def test_own_write_echo_is_harmless(live, feeds, sb):
    called = live.call("a", "staff-1")
    feeds[0].push("UPDATE", sb.tables["queue_entries"][0])
    live.pump()
    assert live.cache.get("a") == called


def test_call_next_prefers_emergency(live):
    e = live.call_next("Lab", "staff-1")
    assert e.id == "b"
    assert e.status == CALLED
    assert live.call_next("X-ray") is None


def test_failed_write_rolls_back(live, sb):
    sb.fail("queue_entries", "update")
    with pytest.raises(BackendError):
        live.call("a", "staff-1")
    assert live.cache.get("a").status == WAITING
    assert live.cache.get("a").called_at is None


def test_conflict_reloads_the_backend_copy(live, sb):
    sb.tables["queue_entries"][0]["status"] = SKIPPED
    with pytest.raises(ConflictError):
        live.call("a")
    assert live.cache.get("a").status == SKIPPED


def test_call_next_after_conflict_moves_on(live, sb):
    sb.tables["queue_entries"][1]["status"] = SKIPPED
    with pytest.raises(ConflictError):
        live.call_next("Lab", "staff-1")
    assert live.cache.get("b").status == SKIPPED
    assert live.call_next("Lab", "staff-1").id == "a"


def test_conflict_on_deleted_entry_drops_it(live, sb):
    sb.tables["queue_entries"] = [r for r in sb.tables["queue_entries"] if r["id"] != "a"]
    with pytest.raises(ConflictError):
        live.call("a")
    assert "a" not in live.cache


def test_illegal_transition_never_writes(live, sb):
    with pytest.raises(InvalidTransition):
        live.complete("a")
    assert sb.writes() == []


def test_create_needs_token_or_prefix(live, sb):
    with pytest.raises(ValidationError):
        live.create(QueueDraft(full_name="Ama", department="Lab"))
    e = live.create(QueueDraft(full_name="Ama", department="Lab"), prefix="LAB")
    assert e.token.startswith("LAB-")
    assert e.id in live.cache


def test_transfer_through_router(live):
    out = live.transfer("a", "Pharmacy", "staff-1", "meds")
    assert live.cache.get("a").department == "Pharmacy"
    assert out.record.to_department == "Pharmacy"
    out = live.transfer_by_flow("a", "f-lab", "staff-1")
    assert out.flow_complete
    assert live.cache.get("a").department == "Pharmacy"


def test_transfer_without_router(repo):
    with pytest.raises(ValidationError):
        QueueSession(repo).transfer("a", "Pharmacy", "staff-1")


def test_refetch_and_patch_converge(repo, sb, feeds):
    sb.tables["queue_entries"] = [entry_row("a", "LAB-001"), entry_row("b", "LAB-002", minutes=1)]
    patch, refetch = QueueSession(repo, strategy=PATCH), QueueSession(repo, strategy=REFETCH)
    patch.start()
    refetch.start()
    row = sb.tables["queue_entries"][1]
    row.update(status=CALLED, called_at=at(5).isoformat(), updated_at=at(5).isoformat())
    for feed in feeds:
        feed.push("UPDATE", dict(row))
    patch.pump()
    refetch.pump()
    assert patch.entries == refetch.entries


def test_refetch_failure_keeps_cache(repo, sb, feeds):
    sb.tables["queue_entries"] = [entry_row("a", "LAB-001")]
    s = QueueSession(repo, strategy=REFETCH)
    s.start()
    sb.fail("queue_entries", "select")
    feeds[0].push("DELETE", old={"id": "a"})
    s.pump()
    assert "a" in s.cache


def test_stop_unsubscribes(live, feeds):
    live.stop()
    assert feeds[0].closed
    assert live.pump() == 0


def test_unknown_strategy(repo):
    with pytest.raises(ValueError):
        QueueSession(repo, strategy="poll")


def test_delete_removes_entry(live, sb):
    live.delete("c")
    assert "c" not in live.cache
    assert [r["id"] for r in sb.tables["queue_entries"]] == ["a", "b"]
    with pytest.raises(ConflictError):
        live.delete("c")


def test_dropped_session_closes_its_feed(repo, sb, feeds):
    sb.tables["queue_entries"] = [entry_row("a", "LAB-001")]
    s = QueueSession(repo)
    s.start()
    del s
    gc.collect()
    assert feeds[0].closed


def test_feed_overflow_triggers_reload(live, feeds, sb):
    sb.tables["queue_entries"].append(entry_row("d", "LAB-009", minutes=2))
    feeds[0].overflowed = True
    live.pump()
    assert "d" in live.cache
    assert not live.needs_refetch


def test_failed_reload_after_overflow_is_retried(live, feeds, sb):
    sb.tables["queue_entries"].append(entry_row("d", "LAB-009", minutes=2))
    feeds[0].overflowed = True
    sb.fail("queue_entries", "select")
    live.pump()
    assert live.needs_refetch and "d" not in live.cache
    live.pump()
    assert "d" in live.cache
