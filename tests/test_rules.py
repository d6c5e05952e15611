import random

import pytest

from config import SystemSettings
from errors import InvalidTransition, ValidationError
from models import (
    CALLED, COMPLETED, EMERGENCY, SERVED, SKIPPED, STATUSES, WAITING, Profile,
    QueueDraft, QueueEntry,
)
from rules import (
    TRANSITIONS, allowed_departments, apply_transition, call_next, can_access_department,
    can_act_on_entry, can_delete_entry, can_transfer, check_transition, clean_department,
    clean_draft, clean_flow, format_token, generate_token, in_queue_order, is_valid_token,
    next_actions, permissions_for, split_token, transferable, transition_fields,
)

from conftest import at

LEGAL = {
    (WAITING, CALLED), (CALLED, SERVED), (SERVED, COMPLETED),
    (WAITING, SKIPPED), (CALLED, SKIPPED),
}


def entry(id="e1", status=WAITING, priority="Normal", minutes=0, department="Lab"):
    return QueueEntry(id=id, token=f"LAB-{len(id):03d}", full_name="A Patient",
                      department=department, priority=priority, status=status,
                      timestamp=at(minutes))


@pytest.mark.parametrize("current", STATUSES)
@pytest.mark.parametrize("target", STATUSES)
def test_only_graph_edges_are_legal(current, target):
    e = entry(status=current)
    if (current, target) in LEGAL:
        assert apply_transition(e, target).status == target
    else:
        with pytest.raises(InvalidTransition):
            apply_transition(e, target)
        assert e.status == current


def test_terminal_states_have_no_way_out():
    assert next_actions(COMPLETED) == ()
    assert next_actions(SKIPPED) == ()
    assert set(next_actions(WAITING)) == {CALLED, SKIPPED}


def test_transition_stamps_exactly_one_timestamp():
    e = entry(status=CALLED)
    fields = transition_fields(e, SKIPPED, at=at(5))
    assert fields == {"status": SKIPPED, "skipped_at": at(5)}


def test_serve_records_who_served():
    e = entry(status=CALLED)
    served = apply_transition(e, SERVED, actor="staff-1", at=at(9))
    assert served.served_by == "staff-1"
    assert served.served_at == at(9)
    assert e.served_by is None


def test_invalid_transition_carries_both_states():
    with pytest.raises(InvalidTransition) as info:
        check_transition(WAITING, COMPLETED)
    assert info.value.current == WAITING
    assert info.value.target == COMPLETED


def test_emergency_goes_before_older_normal():
    old_normal = entry("a", minutes=0)
    new_emergency = entry("b", minutes=30, priority=EMERGENCY)
    newer_normal = entry("c", minutes=10)
    assert [e.id for e in in_queue_order([old_normal, newer_normal, new_emergency])] == ["b", "a", "c"]
    assert call_next([old_normal, new_emergency], "Lab").id == "b"


def test_call_next_ignores_other_departments_and_statuses():
    es = [entry("a", status=CALLED), entry("b", department="Pharmacy"), entry("c", minutes=5)]
    assert call_next(es, "Lab").id == "c"
    assert call_next(es, "X-ray") is None
    assert call_next(es).id == "b"


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__()
        self.value = value

    def randint(self, a, b):
        return self.value


def test_token_is_zero_padded():
    assert generate_token("LAB", FixedRandom(7)) == "LAB-007"
    assert generate_token("lab ", FixedRandom(999)) == "LAB-999"
    assert format_token("C", 42) == "C-042"


def test_generated_tokens_match_format():
    rng = random.Random(1)
    for _ in range(200):
        token = generate_token("LAB", rng)
        assert is_valid_token(token)
        assert token.startswith("LAB-")


def test_token_without_prefix_is_rejected():
    with pytest.raises(ValidationError):
        generate_token("")


def test_split_token():
    assert split_token("LAB-007") == ("LAB", "007")
    assert split_token("C042") == ("C", "042")
    assert not is_valid_token("LAB-07")
    assert not is_valid_token("lab-007")


def test_clean_draft_trims_and_validates():
    d = clean_draft(QueueDraft(full_name="  Ama Owusu ", department="Lab", phone_number="  "),
                    departments=["Lab"])
    assert d.full_name == "Ama Owusu"
    assert d.phone_number is None
    with pytest.raises(ValidationError):
        clean_draft(QueueDraft(full_name="   ", department="Lab"))
    with pytest.raises(ValidationError):
        clean_draft(QueueDraft(full_name="X", department="Lab", priority="Urgent"))
    with pytest.raises(ValidationError):
        clean_draft(QueueDraft(full_name="X", department="Morgue"), departments=["Lab"])


def test_role_permissions():
    assert all(permissions_for("admin").values())
    recep = permissions_for("receptionist")
    assert recep["generate_tokens"] and not recep["call_tokens"]
    assert permissions_for("nurse")["call_tokens"]
    assert not any(permissions_for("visitor").values())


def test_department_scoping():
    nurse = Profile(id="u1", full_name="N", role="nurse", department="Lab", departments=("Pharmacy",))
    assert allowed_departments(nurse) == ("Lab", "Pharmacy")
    assert can_access_department(nurse, "Pharmacy")
    assert not can_access_department(nurse, "X-ray")
    assert can_access_department(Profile(id="a", full_name="A", role="admin"), "X-ray")


def test_restricted_staff_only_act_in_own_department():
    staff = Profile(id="u1", full_name="S", role="staff", department="Lab")
    admin = Profile(id="u2", full_name="A", role="admin")
    recep = Profile(id="u3", full_name="R", role="receptionist")
    restricted = SystemSettings(staff_access_own_department=True)
    open_ = SystemSettings()
    pharmacy_entry = entry(department="Pharmacy")
    assert not can_act_on_entry(staff, pharmacy_entry, restricted)
    assert can_act_on_entry(staff, pharmacy_entry, open_)
    assert can_act_on_entry(admin, pharmacy_entry, restricted)
    assert not can_act_on_entry(recep, pharmacy_entry, open_)


def test_cross_department_transfer_permission():
    staff = Profile(id="u1", full_name="S", role="staff", department="Lab")
    assert not can_transfer(staff, SystemSettings())
    assert can_transfer(staff, SystemSettings(allow_cross_department_transfer=True))
    assert can_transfer(Profile(id="a", full_name="A", role="admin"), SystemSettings())


def test_graph_table_covers_every_status():
    assert set(TRANSITIONS) == set(STATUSES)


def test_only_admins_delete_entries():
    assert can_delete_entry(Profile(id="a", full_name="A", role="admin"))
    assert not can_delete_entry(Profile(id="u", full_name="N", role="nurse", department="Lab"))
    assert not can_delete_entry(None)


@pytest.mark.parametrize("status,ok", [
    (WAITING, True), (CALLED, True), (SERVED, True), (COMPLETED, True), (SKIPPED, False),
])
def test_transferable_statuses(status, ok):
    assert transferable(entry(status=status)) is ok


def test_restricted_staff_with_extra_departments():
    nurse = Profile(id="u1", full_name="N", role="nurse", department="Lab", departments=("Pharmacy",))
    restricted = SystemSettings(staff_access_own_department=True)
    assert can_act_on_entry(nurse, entry(department="Pharmacy"), restricted)
    assert not can_act_on_entry(nurse, entry(department="X-ray"), restricted)


def test_clean_department():
    assert clean_department("  Dental ", "den") == ("Dental", "DEN")
    for name, prefix in [("", "D"), ("Dental", ""), ("Dental", "DENTAL"), ("Dental", "D-1")]:
        with pytest.raises(ValidationError):
            clean_department(name, prefix)


def test_clean_flow_needs_two_known_stops():
    assert clean_flow(" Lab work ", ["Consultation", " Lab", ""]) == ("Lab work", ["Consultation", "Lab"])
    with pytest.raises(ValidationError):
        clean_flow("Lab work", ["Lab"])
    with pytest.raises(ValidationError):
        clean_flow("", ["Lab", "Pharmacy"])
    with pytest.raises(ValidationError):
        clean_flow("Scan", ["Lab", "X-ray"], known=["Lab", "Pharmacy"])
