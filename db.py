"""
═══════════════════════════════════════════════════════════
 MediQueue — Database Layer (Supabase)
 Shared by kiosk_app.py, staff_app.py and display_app.py.
 The only module that talks to the Supabase client. Rows are
 mapped to models.py dataclasses at this boundary.
═══════════════════════════════════════════════════════════
"""

import asyncio
import json
import logging
import queue
import threading
import uuid
from dataclasses import replace
from datetime import datetime

import httpx
import streamlit as st
from postgrest.exceptions import APIError
from supabase import acreate_client, create_client

from config import SystemSettings, load_credentials
from errors import BackendError, ConfigError, ConflictError, TransferError, ValidationError
from models import (
    LIFECYCLE_FIELDS, NORMAL, TERMINAL, WAITING, ChangeEvent, Department, Profile,
    QueueEntry, ServiceFlow, TransferRecord,
)
from rules import (
    ROLE_LABELS, clean_department, clean_draft, clean_flow, is_valid_token, transition_fields,
)

log = logging.getLogger("mediqueue.db")

VER = "V1.4.0"

ENTRIES = "queue_entries"
TRANSFERS = "queue_transfers"
DEPARTMENTS = "departments"
FLOWS = "service_flows"
SETTINGS = "system_settings"
PROFILES = "profiles"
USER_DEPARTMENTS = "user_departments"

CHANGE_TYPES = ("INSERT", "UPDATE", "DELETE")

# Undelivered change payloads held per feed before events are dropped
INBOX_LIMIT = 1000


# ── Supabase Connection ──
def get_supabase():
    if "sb_client" not in st.session_state:
        try:
            url, key = load_credentials()
        except ConfigError as e:
            st.error(f"❌ {e}")
            st.stop()
        st.session_state.sb_client = create_client(url, key)
    return st.session_state.sb_client


def get_repository():
    return QueueRepository(get_supabase())


# ═══════════════════════════════════════════════════
#  ROW MAPPING
# ═══════════════════════════════════════════════════
def parse_ts(value):
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def to_row_value(value):
    return value.isoformat() if isinstance(value, datetime) else value


# domain field → column, where they differ
_ENTRY_COLUMNS = {"timestamp": "created_at"}
_ENTRY_DATES = ("timestamp", "called_at", "served_at", "completed_at", "skipped_at", "updated_at")
_ENTRY_FIELDS = ("id", "token", "full_name", "department", "priority", "status", "timestamp",
                 "phone_number", "intended_department", "called_at", "served_at",
                 "completed_at", "skipped_at", "transferred_from", "served_by", "updated_at")


def _entry_values(row):
    """Domain field values for whichever columns are present in `row`."""
    values = {}
    for f in _ENTRY_FIELDS:
        col = _ENTRY_COLUMNS.get(f, f)
        if col in row:
            values[f] = parse_ts(row[col]) if f in _ENTRY_DATES else row[col]
    return values


def entry_from_row(row):
    values = _entry_values(row)
    values.setdefault("priority", NORMAL)
    values.setdefault("status", WAITING)
    values["priority"] = values["priority"] or NORMAL
    values["status"] = values["status"] or WAITING
    return QueueEntry(**values)


def merge_row(entry, row):
    """Overlay the columns present in `row` on an existing entry."""
    values = _entry_values(row)
    values.pop("id", None)
    return replace(entry, **values)


def entry_updates_to_row(updates):
    return {_ENTRY_COLUMNS.get(k, k): to_row_value(v) for k, v in updates.items()}


def department_from_row(row):
    return Department(
        name=row["name"],
        prefix=row.get("prefix") or "",
        color_code=row.get("color_code") or "#6B7280",
        is_internal=bool(row.get("is_internal", False)),
        is_active=bool(row.get("is_active", True)),
        id=row.get("id"),
        announcement_template=row.get("announcement_template") or None,
        counter=row.get("counter") or row.get("room") or None,
    )


def flow_from_row(row):
    depts = row.get("flow_departments") or []
    if isinstance(depts, str):
        depts = json.loads(depts)
    return ServiceFlow(
        id=row["id"],
        name=row["name"],
        flow_departments=list(depts),
        is_active=bool(row.get("is_active", True)),
        description=row.get("description") or "",
    )


def transfer_from_row(row):
    return TransferRecord(
        queue_entry_id=row["queue_entry_id"],
        from_department=row["from_department"],
        to_department=row["to_department"],
        transferred_by=row["transferred_by"],
        reason=row.get("reason"),
        transferred_at=parse_ts(row.get("transferred_at")),
        id=row.get("id"),
    )


def profile_from_row(row, departments=()):
    return Profile(
        id=row["id"],
        full_name=row.get("full_name") or "",
        role=row.get("role") or "",
        department=row.get("department") or None,
        email=row.get("email"),
        departments=tuple(departments),
    )


def _run(query, action):
    """Execute a query builder, turning client errors into BackendError."""
    try:
        return query.execute().data or []
    except (APIError, httpx.HTTPError) as e:
        log.error("%s failed: %s", action, e)
        raise BackendError(action, e) from e


# ═══════════════════════════════════════════════════
#  QUEUE ENTRY REPOSITORY
# ═══════════════════════════════════════════════════
class QueueRepository:
    """Typed reads and writes over the Supabase tables the queue uses."""

    def __init__(self, sb, feed_factory=None):
        self.sb = sb
        self.feed_factory = feed_factory or ChangeFeed

    # ── Queue entries: reads ──
    def list(self, department=None):
        """All entries, oldest first."""
        q = self.sb.table(ENTRIES).select("*")
        if department:
            q = q.eq("department", department)
        rows = _run(q.order("created_at"), "Load queue")
        return [entry_from_row(r) for r in rows]

    def get(self, entry_id):
        rows = _run(self.sb.table(ENTRIES).select("*").eq("id", entry_id), "Load entry")
        if not rows:
            raise ConflictError("Load entry", f"no queue entry {entry_id}")
        return entry_from_row(rows[0])

    # ── Queue entries: writes ──
    def create(self, draft, token, departments=None):
        """Issue a new Waiting entry. `token` is generated by the caller."""
        draft = clean_draft(draft, departments)
        if not is_valid_token(token):
            raise ValidationError(f"Malformed token: {token}")
        row = {
            "token": token,
            "full_name": draft.full_name,
            "phone_number": draft.phone_number,
            "department": draft.department,
            "priority": draft.priority,
            "status": WAITING,
        }
        if draft.intended_department:
            row["intended_department"] = draft.intended_department
        rows = _run(self.sb.table(ENTRIES).insert(row), f"Create token {token}")
        if not rows:
            raise BackendError(f"Create token {token}", "no row returned")
        log.info("Issued %s for %s (%s)", token, draft.department, draft.priority)
        return entry_from_row(rows[0])

    def transition(self, entry_id, status, actor=None, current=None):
        """Move an entry along the status graph.

        The update is guarded on the status we validated against, so a
        concurrent change by another desk surfaces as ConflictError
        instead of being overwritten.
        """
        entry = current or self.get(entry_id)
        updates = transition_fields(entry, status, actor)
        q = (self.sb.table(ENTRIES)
             .update(entry_updates_to_row(updates))
             .eq("id", entry_id)
             .eq("status", entry.status))
        rows = _run(q, f"{status} {entry.token}")
        if not rows:
            raise ConflictError(f"{status} {entry.token}", "entry changed since it was loaded")
        log.info("%s → %s by %s", entry.token, status, actor or "-")
        return entry_from_row(rows[0])

    def transfer(self, entry_id, to_department, actor, reason=None, current=None):
        """Move an entry to another department and log it, as one unit of work.

        If the audit insert fails the entry update is reverted before the
        TransferError is raised.
        """
        entry = current or self.get(entry_id)
        if to_department == entry.department:
            raise ValidationError("Choose a department other than the current one.")
        action = f"Transfer {entry.token} to {to_department}"
        updates = {"department": to_department, "status": WAITING,
                   "transferred_from": entry.department}
        updates.update({f: None for f in LIFECYCLE_FIELDS})
        q = (self.sb.table(ENTRIES)
             .update(entry_updates_to_row(updates))
             .eq("id", entry_id)
             .eq("department", entry.department))
        try:
            rows = _run(q, action)
        except BackendError as e:
            raise TransferError(action, e.cause) from e
        if not rows:
            raise TransferError(action, "entry changed since it was loaded")

        record = {
            "queue_entry_id": entry_id,
            "from_department": entry.department,
            "to_department": to_department,
            "transferred_by": actor,
            "reason": reason,
        }
        try:
            logged = _run(self.sb.table(TRANSFERS).insert(record), f"Log transfer of {entry.token}")
        except BackendError as e:
            self._revert_transfer(entry, to_department)
            raise TransferError(action, e.cause) from e
        log.info("%s moved %s → %s by %s", entry.token, entry.department, to_department, actor)
        moved = entry_from_row(rows[0])
        return moved, transfer_from_row(logged[0] if logged else record)

    def _revert_transfer(self, entry, to_department):
        restore = {"department": entry.department, "status": entry.status,
                   "transferred_from": entry.transferred_from}
        restore.update({f: getattr(entry, f) for f in LIFECYCLE_FIELDS})
        q = (self.sb.table(ENTRIES)
             .update(entry_updates_to_row(restore))
             .eq("id", entry.id)
             .eq("department", to_department))
        try:
            _run(q, f"Revert transfer of {entry.token}")
        except BackendError:
            log.error("Entry %s left in %s after a failed transfer log", entry.token, to_department)
            raise

    def delete(self, entry_id):
        rows = _run(self.sb.table(ENTRIES).delete().eq("id", entry_id), "Delete entry")
        if not rows:
            raise ConflictError("Delete entry", f"no queue entry {entry_id}")
        log.info("Deleted entry %s (%s)", entry_id, rows[0].get("token"))

    def transfers(self, entry_id):
        q = (self.sb.table(TRANSFERS).select("*")
             .eq("queue_entry_id", entry_id).order("transferred_at"))
        return [transfer_from_row(r) for r in _run(q, "Load transfer history")]

    def list_range(self, start, end):
        """Entries created in [start, end), oldest first. Used by reports."""
        q = (self.sb.table(ENTRIES).select("*")
             .gte("created_at", to_row_value(start))
             .lt("created_at", to_row_value(end))
             .order("created_at"))
        return [entry_from_row(r) for r in _run(q, "Load report range")]

    def has_open_entries(self, department):
        """Whether any entry in `department` is still Waiting, Called or Served."""
        rows = _run(self.sb.table(ENTRIES).select("id, status").eq("department", department),
                    f"Check open entries in {department}")
        return any(r.get("status") not in TERMINAL for r in rows)

    # ── Administration: departments ──
    def add_department(self, name, prefix, color_code=None, is_internal=False,
                       announcement_template=None):
        name, prefix = clean_department(name, prefix)
        if any(d.name.lower() == name.lower() for d in self.departments(active_only=False)):
            raise ValidationError(f"Department {name} already exists.")
        row = {
            "name": name,
            "prefix": prefix,
            "color_code": color_code or "#6B7280",
            "is_internal": bool(is_internal),
            "is_active": True,
            "announcement_template": (announcement_template or "").strip() or None,
        }
        rows = _run(self.sb.table(DEPARTMENTS).insert(row), f"Add department {name}")
        if not rows:
            raise BackendError(f"Add department {name}", "no row returned")
        invalidate_lookups()
        log.info("Added department %s (%s)", name, prefix)
        return department_from_row(rows[0])

    def update_department(self, current, name=None, prefix=None, color_code=None,
                          is_active=None, is_internal=None, announcement_template=None):
        """Edit `current` (a Department). Arguments left as None keep their value.

        Entries reference departments by name, so a department with open
        entries cannot be renamed.
        """
        name, prefix = clean_department(current.name if name is None else name,
                                        current.prefix if prefix is None else prefix)
        if name != current.name and self.has_open_entries(current.name):
            raise ValidationError(f"{current.name} has patients in the queue and cannot be renamed.")
        values = {"name": name, "prefix": prefix}
        if color_code is not None:
            values["color_code"] = color_code
        if is_active is not None:
            values["is_active"] = bool(is_active)
        if is_internal is not None:
            values["is_internal"] = bool(is_internal)
        if announcement_template is not None:
            values["announcement_template"] = announcement_template.strip() or None
        rows = _run(self.sb.table(DEPARTMENTS).update(values).eq("id", current.id),
                    f"Update department {current.name}")
        if not rows:
            raise ConflictError(f"Update department {current.name}", "department no longer exists")
        invalidate_lookups()
        log.info("Updated department %s", name)
        return department_from_row(rows[0])

    def delete_department(self, department):
        """Delete a Department. Refused while it still has open entries."""
        if self.has_open_entries(department.name):
            raise ValidationError(f"{department.name} still has patients in the queue.")
        _run(self.sb.table(DEPARTMENTS).delete().eq("id", department.id),
             f"Delete department {department.name}")
        invalidate_lookups()
        log.info("Deleted department %s", department.name)

    # ── Administration: service flows ──
    def add_flow(self, name, flow_departments, description="", known=None):
        name, stops = clean_flow(name, flow_departments, known)
        row = {"name": name, "flow_departments": stops,
               "description": (description or "").strip(), "is_active": True}
        rows = _run(self.sb.table(FLOWS).insert(row), f"Add service flow {name}")
        if not rows:
            raise BackendError(f"Add service flow {name}", "no row returned")
        invalidate_lookups()
        log.info("Added service flow %s: %s", name, " → ".join(stops))
        return flow_from_row(rows[0])

    def update_flow(self, flow_id, name, flow_departments, description="", is_active=True, known=None):
        name, stops = clean_flow(name, flow_departments, known)
        values = {"name": name, "flow_departments": stops,
                  "description": (description or "").strip(), "is_active": bool(is_active)}
        rows = _run(self.sb.table(FLOWS).update(values).eq("id", flow_id), f"Update service flow {name}")
        if not rows:
            raise ConflictError(f"Update service flow {name}", "flow no longer exists")
        invalidate_lookups()
        log.info("Updated service flow %s", name)
        return flow_from_row(rows[0])

    def delete_flow(self, flow_id):
        _run(self.sb.table(FLOWS).delete().eq("id", flow_id), "Delete service flow")
        invalidate_lookups()
        log.info("Deleted service flow %s", flow_id)

    # ── Administration: settings & users ──
    def save_setting(self, key, value):
        """Write one system setting, inserting the row if it does not exist yet."""
        if key not in SystemSettings.keys():
            raise ValidationError(f"Unknown setting: {key}")
        action = f"Save setting {key}"
        rows = _run(self.sb.table(SETTINGS).update({"setting_value": value}).eq("setting_key", key), action)
        if not rows:
            _run(self.sb.table(SETTINGS).insert({"setting_key": key, "setting_value": value}), action)
        invalidate_lookups()
        log.info("Setting %s = %r", key, value)

    def profiles(self):
        rows = _run(self.sb.table(PROFILES).select("*").order("full_name"), "Load users")
        return [profile_from_row(r) for r in rows]

    def update_profile(self, user_id, role, department=None):
        if role not in ROLE_LABELS:
            raise ValidationError(f"Unknown role: {role}")
        values = {"role": role, "department": (department or "").strip() or None}
        rows = _run(self.sb.table(PROFILES).update(values).eq("id", user_id), "Update user")
        if not rows:
            raise ConflictError("Update user", f"no profile {user_id}")
        log.info("User %s is now %s (%s)", user_id, role, values["department"] or "-")
        return profile_from_row(rows[0])

    # ── Change feed ──
    def subscribe(self, on_change):
        """Attach to the realtime feed. Call `pump()` on the returned handle to deliver."""
        feed = self.feed_factory(ENTRIES)
        feed.start()
        return Subscription(feed, on_change)

    # ── Lookups ──
    def departments(self, active_only=True):
        q = self.sb.table(DEPARTMENTS).select("*")
        if active_only:
            q = q.eq("is_active", True)
        return [department_from_row(r) for r in _run(q.order("name"), "Load departments")]

    def service_flows(self, active_only=True):
        q = self.sb.table(FLOWS).select("*")
        if active_only:
            q = q.eq("is_active", True)
        return [flow_from_row(r) for r in _run(q.order("name"), "Load service flows")]

    def settings(self):
        rows = _run(self.sb.table(SETTINGS).select("setting_key, setting_value"), "Load settings")
        return SystemSettings.from_rows(rows)

    def profile(self, user_id):
        rows = _run(self.sb.table(PROFILES).select("*").eq("id", user_id), "Load profile")
        if not rows:
            return None
        links = _run(self.sb.table(USER_DEPARTMENTS)
                     .select("department_id, departments:department_id(name)")
                     .eq("user_id", user_id), "Load user departments")
        extra = [l["departments"]["name"] for l in links if l.get("departments")]
        return profile_from_row(rows[0], extra)


# ═══════════════════════════════════════════════════
#  CHANGE FEED (realtime → message channel)
# ═══════════════════════════════════════════════════
def parse_change(payload):
    """Normalize a realtime postgres_changes payload into a ChangeEvent."""
    data = payload.get("data", payload)
    kind = (data.get("type") or data.get("eventType") or "").upper()
    if kind not in CHANGE_TYPES:
        raise ValueError(f"unknown change type {kind!r}")
    record = data.get("record") or data.get("new") or {}
    old = data.get("old_record") or data.get("old") or {}
    event = ChangeEvent(kind, dict(record), dict(old))
    if not event.entry_id:
        raise ValueError(f"{kind} change without a row id")
    return event


class ChangeFeed:
    """Realtime subscription to one table.

    The realtime client lives on its own event loop in a daemon thread.
    Its callback only enqueues raw payloads; consumers drain them from
    `inbox` on their own thread. A full inbox drops events and raises the
    overflow flag so the consumer knows to refetch.
    """

    def __init__(self, table, event="*", credentials=None, inbox_size=INBOX_LIMIT):
        self.table = table
        self.event = event
        self.credentials = credentials
        self.inbox = queue.Queue(maxsize=inbox_size)
        self.error = None
        self._overflow = threading.Event()
        self._loop = None
        self._stop = None
        self._thread = None
        self._ready = threading.Event()

    def start(self, timeout=10):
        if self._thread is not None:
            return
        if self.credentials is None:
            self.credentials = load_credentials()
        self._thread = threading.Thread(target=asyncio.run, args=(self._listen(),),
                                        name=f"feed-{self.table}", daemon=True)
        self._thread.start()
        self._ready.wait(timeout)

    async def _listen(self):
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        try:
            url, key = self.credentials
            client = await acreate_client(url, key)
            channel = client.channel(f"{self.table}-{uuid.uuid4().hex[:8]}")
            channel.on_postgres_changes(self.event, callback=self._enqueue,
                                        table=self.table, schema="public")
            await channel.subscribe(self._on_status)
        except Exception as e:
            log.exception("Could not subscribe to %s changes", self.table)
            self.error = e
            return
        finally:
            self._ready.set()
        await self._stop.wait()
        await client.remove_channel(channel)
        log.info("Unsubscribed from %s changes", self.table)

    def _enqueue(self, payload):
        try:
            self.inbox.put_nowait(payload)
        except queue.Full:
            if not self._overflow.is_set():
                log.warning("%s change inbox full; dropping events until the next refetch", self.table)
            self._overflow.set()

    def _on_status(self, status, err=None):
        state = getattr(status, "value", status)
        if state == "SUBSCRIBED" and err is None:
            log.info("Realtime %s channel: %s", self.table, state)
            self.error = None
        elif err is not None or state in ("CHANNEL_ERROR", "TIMED_OUT"):
            log.warning("Realtime %s channel: %s (%s)", self.table, state, err)
            self.error = err or state
        else:
            log.info("Realtime %s channel: %s", self.table, state)

    def take_overflow(self):
        """True once after events were dropped."""
        if self._overflow.is_set():
            self._overflow.clear()
            return True
        return False

    def drain(self):
        out = []
        while True:
            try:
                out.append(self.inbox.get_nowait())
            except queue.Empty:
                return out

    def close(self, timeout=5):
        if self._loop is not None and self._stop is not None:
            self._loop.call_soon_threadsafe(self._stop.set)
        if self._thread is not None:
            self._thread.join(timeout)


class Subscription:
    """Handle returned by QueueRepository.subscribe."""

    def __init__(self, feed, on_change):
        self.feed = feed
        self.on_change = on_change
        self.active = True

    @property
    def healthy(self):
        return self.feed.error is None

    def pump(self):
        """Deliver queued changes in arrival order. Returns how many were applied."""
        if not self.active:
            return 0
        delivered = 0
        for payload in self.feed.drain():
            try:
                event = parse_change(payload)
            except (AttributeError, TypeError, ValueError) as e:
                log.warning("Skipping malformed %s change: %s", self.feed.table, e)
                continue
            self.on_change(event)
            delivered += 1
        return delivered

    def take_overflow(self):
        """True when the feed dropped events since the last check; refetch to recover."""
        return self.active and self.feed.take_overflow()

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.feed.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.unsubscribe()


# ═══════════════════════════════════════════════════
#  LOCAL CACHE
# ═══════════════════════════════════════════════════
def _cache_order(entry):
    ts = entry.timestamp.timestamp() if entry.timestamp else float("-inf")
    return (ts, entry.id)


def _is_stale(current, incoming):
    return (current.updated_at is not None and incoming.updated_at is not None
            and incoming.updated_at < current.updated_at)


class QueueCache:
    """One viewer's copy of the entry list.

    Write responses and echoed change events both land here; applying
    the same update twice leaves the cache unchanged, and an event older
    than what is cached (by `updated_at`) is ignored.
    """

    def __init__(self, entries=()):
        self._entries = {e.id: e for e in entries}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, entry_id):
        return entry_id in self._entries

    def get(self, entry_id):
        return self._entries.get(entry_id)

    def entries(self):
        """Oldest first, ties by id."""
        return sorted(self._entries.values(), key=_cache_order)

    def replace_all(self, entries):
        self._entries = {e.id: e for e in entries}

    def upsert(self, entry):
        current = self._entries.get(entry.id)
        if current is not None and _is_stale(current, entry):
            return False
        self._entries[entry.id] = entry
        return True

    def remove(self, entry_id):
        return self._entries.pop(entry_id, None) is not None

    def patch(self, entry_id, **fields):
        """Apply a local change ahead of confirmation. Returns the prior entry."""
        prior = self._entries[entry_id]
        self._entries[entry_id] = replace(prior, **fields)
        return prior

    def restore(self, entry):
        self._entries[entry.id] = entry

    def apply(self, event):
        if event.type == "DELETE":
            return self.remove(event.entry_id)
        current = self._entries.get(event.entry_id)
        if current is None:
            return self.upsert(entry_from_row(event.record))
        return self.upsert(merge_row(current, event.record))


# ═══════════════════════════════════════════════════
#  CACHED LOOKUPS (departments, flows, settings change rarely)
# ═══════════════════════════════════════════════════
@st.cache_data(ttl=60)
def get_departments_cached():
    return get_repository().departments()


@st.cache_data(ttl=60)
def get_flows_cached():
    return get_repository().service_flows()


@st.cache_data(ttl=60)
def get_settings_cached():
    return get_repository().settings()


def invalidate_lookups():
    get_departments_cached.clear()
    get_flows_cached.clear()
    get_settings_cached.clear()
