"""
═══════════════════════════════════════════════════════════
 MediQueue — Queue Rules
 Status state machine, canonical queue ordering, token format,
 draft validation and role permissions. Pure functions only.
═══════════════════════════════════════════════════════════
"""

import random
import re
from dataclasses import replace
from datetime import datetime, timezone

from errors import InvalidTransition, ValidationError
from models import (
    ALL, CALLED, COMPLETED, EMERGENCY, NORMAL, PRIORITIES, SERVED, SKIPPED,
    WAITING, QueueDraft,
)


def now_utc():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════
#  STATUS STATE MACHINE
# ═══════════════════════════════════════════════════
#   Waiting ─Call→ Called ─Serve→ Served ─Complete→ Completed
#   Waiting ─Skip→ Skipped,  Called ─Skip→ Skipped
TRANSITIONS = {
    WAITING: (CALLED, SKIPPED),
    CALLED: (SERVED, SKIPPED),
    SERVED: (COMPLETED,),
    COMPLETED: (),
    SKIPPED: (),
}

# Audit column stamped by each target status
STAMPS = {
    CALLED: "called_at",
    SERVED: "served_at",
    COMPLETED: "completed_at",
    SKIPPED: "skipped_at",
}

ACTION_LABELS = {
    CALLED: "📣 Call",
    SERVED: "▶️ Serve",
    COMPLETED: "✅ Complete",
    SKIPPED: "⏭️ Skip",
}


def next_actions(status):
    return TRANSITIONS.get(status, ())


def check_transition(current, target):
    if target not in TRANSITIONS.get(current, ()):
        raise InvalidTransition(current, target)


def transition_fields(entry, target, actor=None, at=None):
    """Column updates for moving `entry` to `target`. Raises on an illegal edge."""
    check_transition(entry.status, target)
    at = at or now_utc()
    updates = {"status": target, STAMPS[target]: at}
    if target == SERVED:
        updates["served_by"] = actor
    return updates


def apply_transition(entry, target, actor=None, at=None):
    """New entry with the transition applied; the input is left untouched."""
    return replace(entry, **transition_fields(entry, target, actor, at))


# ═══════════════════════════════════════════════════
#  CANONICAL ORDERING
# ═══════════════════════════════════════════════════
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def queue_order_key(entry):
    """Emergency first, then oldest first."""
    return (0 if entry.priority == EMERGENCY else 1, entry.timestamp or _EPOCH, entry.id)


def in_queue_order(entries):
    return sorted(entries, key=queue_order_key)


def call_next(entries, department=None):
    """The Waiting entry that should be called next, or None."""
    waiting = [e for e in entries
               if e.status == WAITING and (department in (None, ALL) or e.department == department)]
    if not waiting:
        return None
    return min(waiting, key=queue_order_key)


# ═══════════════════════════════════════════════════
#  TOKENS
# ═══════════════════════════════════════════════════
TOKEN_RE = re.compile(r"^([A-Z]+)-(\d{3})$")


def format_token(prefix, number):
    return f"{prefix.strip().upper()}-{number:03d}"


def generate_token(prefix, rng=random):
    """`<PREFIX>-<001..999>`. Collisions are possible and tolerated."""
    if not prefix or not prefix.strip():
        raise ValidationError("Department has no token prefix.")
    return format_token(prefix, rng.randint(1, 999))


def is_valid_token(token):
    return bool(token and TOKEN_RE.match(token))


def split_token(token):
    """'LAB-007' → ('LAB', '007'). Tokens without a hyphen split on the letters."""
    m = TOKEN_RE.match(token or "")
    if m:
        return m.group(1), m.group(2)
    m = re.match(r"^([A-Z]*)-?(.*)$", token or "")
    return m.group(1), m.group(2)


# ═══════════════════════════════════════════════════
#  DRAFT VALIDATION
# ═══════════════════════════════════════════════════
def clean_draft(draft, departments=None):
    """Trim and validate a kiosk draft. `departments` limits to active names."""
    name = (draft.full_name or "").strip()
    if not name:
        raise ValidationError("Patient full name is required.")
    dept = (draft.department or "").strip()
    if not dept:
        raise ValidationError("Department is required.")
    if departments is not None and dept not in departments:
        raise ValidationError(f"Unknown or inactive department: {dept}")
    priority = draft.priority or NORMAL
    if priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority}")
    phone = (draft.phone_number or "").strip() or None
    intended = (draft.intended_department or "").strip() or None
    return QueueDraft(full_name=name, department=dept, priority=priority,
                      phone_number=phone, intended_department=intended)


# ═══════════════════════════════════════════════════
#  ROLES & PERMISSIONS
# ═══════════════════════════════════════════════════
ADMIN = "admin"
RECEPTIONIST = "receptionist"
DEPARTMENT_ROLES = ("doctor", "nurse", "staff")

ROLE_LABELS = {"admin": "Administrator", "receptionist": "Receptionist",
               "doctor": "Doctor", "nurse": "Nurse", "staff": "Department Staff"}

_NO_PERMISSIONS = {
    "manage_users": False, "manage_departments": False, "manage_settings": False,
    "generate_tokens": False, "call_tokens": False, "view_all_tokens": False,
    "view_reports": False,
}


def permissions_for(role):
    perms = dict(_NO_PERMISSIONS)
    if role == ADMIN:
        perms = {k: True for k in perms}
    elif role == RECEPTIONIST:
        perms.update(generate_tokens=True, view_all_tokens=True)
    elif role in DEPARTMENT_ROLES:
        perms.update(call_tokens=True)
    return perms


def allowed_departments(profile):
    """Department names a user may work in; ALL for unrestricted roles."""
    if profile is None:
        return ()
    if profile.role in (ADMIN, RECEPTIONIST):
        return (ALL,)
    if profile.role in DEPARTMENT_ROLES:
        return profile.all_departments
    return ()


def can_access_department(profile, department):
    allowed = allowed_departments(profile)
    return ALL in allowed or department in allowed


def can_act_on_entry(profile, entry, settings):
    """Whether `profile` may call/serve/skip `entry` under current settings."""
    if profile is None or not permissions_for(profile.role)["call_tokens"]:
        return False
    if profile.role == ADMIN:
        return True
    if settings.staff_access_own_department:
        return can_access_department(profile, entry.department)
    return True


def can_delete_entry(profile):
    return profile is not None and profile.role == ADMIN


def transferable(entry):
    """Anything not Skipped may move on; a Completed entry goes to its next department."""
    return entry.status == COMPLETED or not entry.is_terminal


# ═══════════════════════════════════════════════════
#  ADMINISTRATION
# ═══════════════════════════════════════════════════
PREFIX_RE = re.compile(r"^[A-Z]{1,5}$")
MIN_FLOW_STOPS = 2


def clean_department(name, prefix):
    """Trimmed name and upper-cased token prefix for a department form."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Department name is required.")
    prefix = (prefix or "").strip().upper()
    if not PREFIX_RE.match(prefix):
        raise ValidationError("Token prefix must be 1 to 5 letters.")
    return name, prefix


def clean_flow(name, flow_departments, known=None):
    """Trimmed flow name and stop list. `known` limits stops to existing departments."""
    name = (name or "").strip()
    stops = [d.strip() for d in flow_departments or () if d and d.strip()]
    if not name or len(stops) < MIN_FLOW_STOPS:
        raise ValidationError(f"A service flow needs a name and at least {MIN_FLOW_STOPS} departments.")
    if known is not None:
        unknown = [d for d in stops if d not in known]
        if unknown:
            raise ValidationError(f"Unknown department in flow: {', '.join(unknown)}")
    return name, stops


def can_transfer(profile, settings):
    if profile is None:
        return False
    return profile.role == ADMIN or settings.allow_cross_department_transfer
