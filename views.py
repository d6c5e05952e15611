"""
═══════════════════════════════════════════════════════════
 MediQueue — Display Projections
 Stateless views over the live entry list: now serving, next up,
 filtered lists, per-department boards, statistics and reports.
═══════════════════════════════════════════════════════════
"""

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models import ALL, CALLED, COMPLETED, IN_PROGRESS, SKIPPED, WAITING, QueueEntry
from rules import ADMIN, in_queue_order

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _in_department(entry, department):
    return department in (None, ALL) or entry.department == department


def currently_serving(entries, department=None, statuses=IN_PROGRESS):
    """Most recently called entry among `statuses`, or None.

    Displays that only show tokens still being called pass statuses=(CALLED,).
    """
    serving = [e for e in entries if e.status in statuses and _in_department(e, department)]
    if not serving:
        return None
    return max(serving, key=lambda e: (e.called_at or e.timestamp or _EPOCH, e.timestamp or _EPOCH))


def next_waiting(entries, department=None, n=3):
    waiting = [e for e in entries if e.status == WAITING and _in_department(e, department)]
    return in_queue_order(waiting)[:n]


def filter_by(entries, department=ALL, status=ALL):
    return [e for e in entries
            if (department in (None, ALL) or e.department == department)
            and (status in (None, ALL) or e.status == status)]


def department_access_filter(entries, role, user_department, restrict_to_own_dept):
    """Entries a user may see. `user_department` may be one name or several."""
    if role == ADMIN or not restrict_to_own_dept:
        return list(entries)
    if isinstance(user_department, str):
        allowed = {user_department}
    else:
        allowed = set(user_department or ())
    return [e for e in entries if e.department in allowed]


# ═══════════════════════════════════════════════════
#  DEPARTMENT BOARDS
# ═══════════════════════════════════════════════════
@dataclass
class Board:
    department: str
    serving: Optional[QueueEntry]
    waiting: list
    total_waiting: int


def department_boards(entries, departments, n=3):
    """One Board per department name, in the order given."""
    boards = {}
    for name in departments:
        mine = [e for e in entries if e.department == name]
        waiting = [e for e in mine if e.status == WAITING]
        boards[name] = Board(name, currently_serving(mine), in_queue_order(waiting)[:n], len(waiting))
    return boards


# ═══════════════════════════════════════════════════
#  STATISTICS
# ═══════════════════════════════════════════════════
def _avg_minutes(pairs):
    spans = [(end - start).total_seconds() / 60 for start, end in pairs if start and end]
    return round(sum(spans) / len(spans)) if spans else 0


def queue_stats(entries):
    entries = list(entries)
    return {
        "total": len(entries),
        "waiting": sum(e.status == WAITING for e in entries),
        "called": sum(e.status == CALLED for e in entries),
        "in_progress": sum(e.status in IN_PROGRESS for e in entries),
        "completed": sum(e.status == COMPLETED for e in entries),
        "skipped": sum(e.status == SKIPPED for e in entries),
        "avg_wait_min": _avg_minutes((e.timestamp, e.called_at) for e in entries),
        "avg_service_min": _avg_minutes((e.called_at, e.completed_at) for e in entries),
    }


# ═══════════════════════════════════════════════════
#  REPORTS
# ═══════════════════════════════════════════════════
REPORT_COLUMNS = ["Token ID", "Patient Name", "Department", "Status", "Priority",
                  "Time of Entry", "Time Called", "Time Served", "Time Completed"]


def hourly_completed(entries, tz=None):
    """Completed entries per hour of issue: 24 counts, hour 0 first."""
    counts = [0] * 24
    for e in entries:
        if e.status == COMPLETED and e.timestamp:
            ts = e.timestamp.astimezone(tz) if tz else e.timestamp
            counts[ts.hour] += 1
    return counts


def department_summary(entries):
    summary = {}
    for e in entries:
        row = summary.setdefault(e.department, {"total": 0, "completed": 0, "skipped": 0})
        row["total"] += 1
        row["completed"] += e.status == COMPLETED
        row["skipped"] += e.status == SKIPPED
    return dict(sorted(summary.items()))


def _cell(ts):
    return ts.isoformat(timespec="seconds") if ts else ""


def export_csv(entries):
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(REPORT_COLUMNS)
    for e in entries:
        w.writerow([e.token, e.full_name, e.department, e.status, e.priority,
                    _cell(e.timestamp), _cell(e.called_at), _cell(e.served_at), _cell(e.completed_at)])
    return out.getvalue()
