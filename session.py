"""
═══════════════════════════════════════════════════════════
 MediQueue — Live Queue Session
 One viewer's working set: the cached entry list, its change-feed
 subscription, and the staff actions that write through the
 repository. Status actions update the cache optimistically and
 roll back if the write fails.
═══════════════════════════════════════════════════════════
"""

import logging
import weakref

from db import QueueCache
from errors import BackendError, ConflictError, QueueError, ValidationError
from models import CALLED, COMPLETED, SERVED, SKIPPED
from rules import apply_transition, call_next, check_transition, generate_token

log = logging.getLogger("mediqueue.session")

PATCH = "patch"
REFETCH = "refetch"


class QueueSession:
    """Live queue for one page session.

    The change feed is closed by `stop()`, or when the session object is
    garbage collected (a closed browser tab drops its Streamlit session).
    """

    def __init__(self, repository, router=None, strategy=PATCH):
        if strategy not in (PATCH, REFETCH):
            raise ValueError(f"unknown sync strategy {strategy!r}")
        self.repo = repository
        self.router = router
        self.strategy = strategy
        self.cache = QueueCache()
        self.subscription = None
        self.needs_refetch = False
        self._finalizer = None

    @property
    def entries(self):
        return self.cache.entries()

    # ── Lifecycle ──
    def start(self):
        """Initial fetch, then attach to the change feed."""
        self.refresh()
        if self.subscription is None:
            # the feed must not keep this session alive
            handler = weakref.WeakMethod(self._on_change)

            def deliver(event):
                on_change = handler()
                if on_change is not None:
                    on_change(event)

            self.subscription = self.repo.subscribe(deliver)
            self._finalizer = weakref.finalize(self, self.subscription.unsubscribe)

    def refresh(self):
        self.cache.replace_all(self.repo.list())
        self.needs_refetch = False

    def pump(self):
        """Apply any changes the feed has delivered since the last call."""
        if self.subscription is None:
            return 0
        applied = self.subscription.pump()
        if self.subscription.take_overflow():
            log.warning("Change feed dropped events; reloading the queue")
            self.needs_refetch = True
        if self.needs_refetch:
            try:
                self.refresh()
            except BackendError:
                log.warning("Reload after dropped events failed; will retry")
        if not self.subscription.healthy:
            log.warning("Change feed unhealthy; showing last known queue")
        return applied

    def stop(self):
        if self._finalizer is not None:
            self._finalizer()
            self._finalizer = None
        self.subscription = None

    def _on_change(self, event):
        if self.strategy == REFETCH:
            try:
                self.refresh()
            except BackendError:
                log.warning("Refetch after %s change failed; keeping cached queue", event.type)
            return
        self.cache.apply(event)

    # ── Actions ──
    def _current(self, entry_id):
        return self.cache.get(entry_id) or self.repo.get(entry_id)

    def _reload(self, entry_id):
        """Replace the cached entry with the backend's copy after a conflict."""
        try:
            fresh = self.repo.get(entry_id)
        except ConflictError:
            self.cache.remove(entry_id)
            return None
        self.cache.restore(fresh)
        return fresh

    def create(self, draft, prefix=None, token=None, departments=None):
        """Issue a token. Pass `token`, or the department `prefix` to generate one."""
        if token is None:
            if prefix is None:
                raise ValidationError("A token or department prefix is required.")
            token = generate_token(prefix)
        entry = self.repo.create(draft, token, departments)
        self.cache.upsert(entry)
        return entry

    def transition(self, entry_id, status, actor=None):
        current = self._current(entry_id)
        check_transition(current.status, status)
        self.cache.restore(apply_transition(current, status, actor))
        try:
            confirmed = self.repo.transition(entry_id, status, actor, current=current)
        except ConflictError:
            self.cache.restore(current)
            try:
                self._reload(entry_id)
            except BackendError:
                log.warning("Could not reload %s after a conflict", current.token)
            raise
        except QueueError:
            self.cache.restore(current)
            raise
        self.cache.upsert(confirmed)
        return confirmed

    def call(self, entry_id, actor=None):
        return self.transition(entry_id, CALLED, actor)

    def serve(self, entry_id, actor=None):
        return self.transition(entry_id, SERVED, actor)

    def complete(self, entry_id, actor=None):
        return self.transition(entry_id, COMPLETED, actor)

    def skip(self, entry_id, actor=None):
        return self.transition(entry_id, SKIPPED, actor)

    def call_next(self, department=None, actor=None):
        """Call whoever is next in `department`. None if nobody is waiting."""
        entry = call_next(self.cache.entries(), department)
        if entry is None:
            return None
        return self.call(entry.id, actor)

    def delete(self, entry_id):
        try:
            self.repo.delete(entry_id)
        except ConflictError:
            self.cache.remove(entry_id)
            raise
        self.cache.remove(entry_id)

    def transfer(self, entry_id, to_department, actor, reason=None):
        outcome = self._router().transfer(self._current(entry_id), to_department, actor, reason)
        self.cache.upsert(outcome.entry)
        return outcome

    def transfer_by_flow(self, entry_id, flow_id, actor, reason=None):
        outcome = self._router().transfer_by_flow(self._current(entry_id), flow_id, actor, reason)
        if not outcome.flow_complete:
            self.cache.upsert(outcome.entry)
        return outcome

    def _router(self):
        if self.router is None:
            raise ValidationError("Transfers are not available on this screen.")
        return self.router
