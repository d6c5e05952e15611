"""
═══════════════════════════════════════════════════════════
 MediQueue — Domain Model
 Plain dataclasses shared by the repository, rules and pages.
 Departments are keyed by name everywhere, never by surrogate id.
═══════════════════════════════════════════════════════════
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# ── Statuses ──
WAITING = "Waiting"
CALLED = "Called"
SERVED = "Served"
COMPLETED = "Completed"
SKIPPED = "Skipped"

STATUSES = (WAITING, CALLED, SERVED, COMPLETED, SKIPPED)
TERMINAL = (COMPLETED, SKIPPED)
IN_PROGRESS = (CALLED, SERVED)

# ── Priorities ──
NORMAL = "Normal"
EMERGENCY = "Emergency"
PRIORITIES = (NORMAL, EMERGENCY)

# Entry point department: every flow may be started from here
RECEPTION = "Reception"

# Filter sentinel meaning "do not filter on this dimension"
ALL = "all"

# Serving-lifecycle columns cleared by a transfer
LIFECYCLE_FIELDS = ("called_at", "served_at", "completed_at", "skipped_at", "served_by")

STATUS_LABELS = {
    WAITING:   "⏳ Waiting",
    CALLED:    "📣 Called",
    SERVED:    "🔵 Serving",
    COMPLETED: "✅ Completed",
    SKIPPED:   "⏭️ Skipped",
}


@dataclass
class QueueEntry:
    id: str
    token: str
    full_name: str
    department: str
    priority: str = NORMAL
    status: str = WAITING
    timestamp: Optional[datetime] = None
    phone_number: Optional[str] = None
    intended_department: Optional[str] = None
    called_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skipped_at: Optional[datetime] = None
    transferred_from: Optional[str] = None
    served_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_emergency(self):
        return self.priority == EMERGENCY

    @property
    def is_terminal(self):
        return self.status in TERMINAL


@dataclass
class QueueDraft:
    """What the kiosk collects before a token is issued."""
    full_name: str
    department: str
    priority: str = NORMAL
    phone_number: Optional[str] = None
    intended_department: Optional[str] = None


@dataclass
class Department:
    name: str
    prefix: str
    color_code: str = "#6B7280"
    is_internal: bool = False
    is_active: bool = True
    id: Optional[str] = None
    announcement_template: Optional[str] = None
    counter: Optional[str] = None


@dataclass
class ServiceFlow:
    id: str
    name: str
    flow_departments: list = field(default_factory=list)
    is_active: bool = True
    description: str = ""


@dataclass
class TransferRecord:
    queue_entry_id: str
    from_department: str
    to_department: str
    transferred_by: str
    reason: Optional[str] = None
    transferred_at: Optional[datetime] = None
    id: Optional[str] = None


@dataclass
class Profile:
    id: str
    full_name: str
    role: str
    department: Optional[str] = None
    email: Optional[str] = None
    departments: tuple = ()

    @property
    def all_departments(self):
        """Primary department plus any extra assignments."""
        names = [self.department] if self.department else []
        names.extend(d for d in self.departments if d not in names)
        return tuple(names)


@dataclass
class ChangeEvent:
    """One row-level notification from the realtime feed."""
    type: str
    record: dict = field(default_factory=dict)
    old_record: dict = field(default_factory=dict)

    @property
    def entry_id(self):
        return self.record.get("id") or self.old_record.get("id")
