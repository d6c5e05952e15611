"""
═══════════════════════════════════════════════════════════
 MediQueue — Transfer & Service-Flow Routing
 Decides where an entry goes next and validates it before the
 repository performs the transfer as one unit of work.
═══════════════════════════════════════════════════════════
"""

import logging
from dataclasses import dataclass
from typing import Optional

from errors import ValidationError
from models import RECEPTION, QueueEntry, TransferRecord
from rules import MIN_FLOW_STOPS, transferable

log = logging.getLogger("mediqueue.routing")


@dataclass
class TransferOutcome:
    entry: QueueEntry
    record: Optional[TransferRecord] = None
    flow_complete: bool = False


def validate_flow(flow):
    if len(flow.flow_departments) < MIN_FLOW_STOPS:
        raise ValidationError(f"Service flow {flow.name!r} needs at least two departments.")


def next_department(flow_departments, current):
    """Next stop after `current` in a flow, or None if `current` is the last stop.

    An entry outside the flow (typically still at Reception) starts at the
    first stop that is not its own department.
    """
    if current in flow_departments:
        i = flow_departments.index(current)
        if i < len(flow_departments) - 1:
            return flow_departments[i + 1]
        return None
    return next((d for d in flow_departments if d != current), flow_departments[0])


def flow_offered(flow, current):
    """Flows are offered where they pass through, and everywhere from Reception."""
    return flow.is_active and (current in flow.flow_departments or current == RECEPTION)


def flow_reason(flow, reason=None):
    reason = (reason or "").strip()
    return f"Flow: {flow.name} - {reason}" if reason else f"Flow: {flow.name}"


class TransferRouter:
    def __init__(self, repository, departments, flows=()):
        self.repo = repository
        self.departments = {d.name: d for d in departments}
        self.flows = {f.id: f for f in flows}

    # ── What to offer ──
    def targets(self, current):
        return [d for d in self.departments.values() if d.is_active and d.name != current]

    def offered_flows(self, current):
        return [f for f in self.flows.values() if flow_offered(f, current)]

    def suggested(self, entry):
        """The patient's originally requested department, when it is still a valid move."""
        dest = entry.intended_department
        dept = self.departments.get(dest) if dest else None
        if dept and dept.is_active and dest != entry.department:
            return dest
        return None

    # ── Manual transfer ──
    def check_destination(self, entry, to_department):
        if not transferable(entry):
            raise ValidationError(f"{entry.token} was skipped and cannot be transferred.")
        if not to_department:
            raise ValidationError("Choose a destination department.")
        if to_department == entry.department:
            raise ValidationError(f"{entry.token} is already in {to_department}.")
        dept = self.departments.get(to_department)
        if dept is None or not dept.is_active:
            raise ValidationError(f"{to_department} is not an active department.")

    def transfer(self, entry, to_department, actor, reason=None):
        self.check_destination(entry, to_department)
        reason = (reason or "").strip() or None
        moved, record = self.repo.transfer(entry.id, to_department, actor, reason, current=entry)
        return TransferOutcome(moved, record)

    # ── Flow-driven transfer ──
    def get_flow(self, flow_id):
        flow = self.flows.get(flow_id)
        if flow is None:
            raise ValidationError(f"Unknown service flow: {flow_id}")
        validate_flow(flow)
        return flow

    def plan_flow(self, entry, flow_id):
        """Destination for `entry` under a flow; None means the flow is complete."""
        flow = self.get_flow(flow_id)
        if not flow_offered(flow, entry.department):
            raise ValidationError(f"{flow.name} is not available from {entry.department}.")
        return next_department(flow.flow_departments, entry.department)

    def transfer_by_flow(self, entry, flow_id, actor, reason=None):
        dest = self.plan_flow(entry, flow_id)
        if dest is None:
            log.info("%s has completed flow %s", entry.token, flow_id)
            return TransferOutcome(entry, None, flow_complete=True)
        flow = self.flows[flow_id]
        return self.transfer(entry, dest, actor, flow_reason(flow, reason))
