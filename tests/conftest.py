"""In-memory stand-in for the Supabase query builder, plus a hand-fed change feed."""

import itertools
from datetime import datetime, timedelta, timezone

import pytest
from postgrest.exceptions import APIError

from db import QueueRepository
from models import Department, ServiceFlow

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def at(minutes):
    return T0 + timedelta(minutes=minutes)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.ranges = []
        self.orders = []

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, row):
        self.op = "insert"
        self.payload = dict(row)
        return self

    def update(self, values):
        self.op = "update"
        self.payload = dict(values)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def gte(self, column, value):
        self.ranges.append((column, lambda have: have >= value))
        return self

    def lt(self, column, value):
        self.ranges.append((column, lambda have: have < value))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def _match(self, row):
        if not all(row.get(c) == v for c, v in self.filters):
            return False
        return all(row.get(c) is not None and test(row[c]) for c, test in self.ranges)

    def execute(self):
        self.db.calls.append((self.table, self.op, self.payload, list(self.filters)))
        err = self.db.failures.pop((self.table, self.op), None)
        if err is not None:
            raise err
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "select":
            out = [dict(r) for r in rows if self._match(r)]
            for column, desc in reversed(self.orders):
                out.sort(key=lambda r: r.get(column) or "", reverse=desc)
            return FakeResponse(out)
        if self.op == "insert":
            row = dict(self.payload)
            row.setdefault("id", f"{self.table}-{next(self.db.ids)}")
            if self.table == "queue_entries":
                stamp = self.db.tick()
                for col in ("called_at", "served_at", "completed_at", "skipped_at",
                            "served_by", "transferred_from", "intended_department"):
                    row.setdefault(col, None)
                row.setdefault("created_at", stamp)
                row["updated_at"] = stamp
            if self.table == "queue_transfers":
                row.setdefault("transferred_at", self.db.tick())
            rows.append(row)
            return FakeResponse([dict(row)])
        if self.op == "update":
            hit = [r for r in rows if self._match(r)]
            for r in hit:
                r.update(self.payload)
                if self.table == "queue_entries":
                    r["updated_at"] = self.db.tick()
            return FakeResponse([dict(r) for r in hit])
        if self.op == "delete":
            gone = [r for r in rows if self._match(r)]
            self.db.tables[self.table] = [r for r in rows if not self._match(r)]
            return FakeResponse([dict(r) for r in gone])
        raise AssertionError(self.op)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.calls = []
        self.failures = {}
        self.ids = itertools.count(1)
        self._clock = itertools.count(1)

    def table(self, name):
        return FakeQuery(self, name)

    def tick(self):
        return (T0 + timedelta(hours=1, seconds=next(self._clock))).isoformat()

    def fail(self, table, op, message="boom"):
        """Make the next `op` on `table` raise the client's APIError."""
        self.failures[(table, op)] = APIError({"message": message, "code": "500"})

    def writes(self, table=None):
        return [c for c in self.calls if c[1] != "select" and (table is None or c[0] == table)]


class FakeFeed:
    def __init__(self, table):
        self.table = table
        self.inbox = []
        self.error = None
        self.started = False
        self.closed = False
        self.overflowed = False

    def start(self):
        self.started = True

    def drain(self):
        out, self.inbox = self.inbox, []
        return out

    def take_overflow(self):
        dropped, self.overflowed = self.overflowed, False
        return dropped

    def close(self):
        self.closed = True

    def push(self, kind, record=None, old=None):
        self.inbox.append({"data": {"type": kind, "record": record or {}, "old_record": old or {}}})


class RecordingSpeaker:
    def __init__(self):
        self.spoken = []

    def speak(self, text, chime=False):
        self.spoken.append(text)


def entry_row(id, token, department="Lab", minutes=0, status="Waiting", priority="Normal", **extra):
    row = {
        "id": id, "token": token, "full_name": f"Patient {id}", "phone_number": None,
        "department": department, "priority": priority, "status": status,
        "created_at": at(minutes).isoformat(), "updated_at": at(minutes).isoformat(),
        "called_at": None, "served_at": None, "completed_at": None, "skipped_at": None,
        "served_by": None, "transferred_from": None, "intended_department": None,
    }
    row.update(extra)
    return row


@pytest.fixture
def sb():
    return FakeSupabase()


@pytest.fixture
def feeds():
    return []


@pytest.fixture
def repo(sb, feeds):
    def factory(table):
        feed = FakeFeed(table)
        feeds.append(feed)
        return feed
    return QueueRepository(sb, feed_factory=factory)


@pytest.fixture
def departments():
    return [
        Department(name="Reception", prefix="R", is_internal=True),
        Department(name="Consultation", prefix="C", counter="Room 2"),
        Department(name="Lab", prefix="LAB", announcement_template="Token {number} to the {department} counter"),
        Department(name="Pharmacy", prefix="P"),
        Department(name="X-ray", prefix="X", is_active=False),
    ]


@pytest.fixture
def flows():
    return [
        ServiceFlow(id="f-basic", name="Basic visit", flow_departments=["Reception", "Consultation", "Pharmacy"]),
        ServiceFlow(id="f-lab", name="Lab work", flow_departments=["Consultation", "Lab", "Pharmacy"]),
        ServiceFlow(id="f-off", name="Retired", flow_departments=["Consultation", "Lab"], is_active=False),
        ServiceFlow(id="f-short", name="Broken", flow_departments=["Lab"]),
    ]
