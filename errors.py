"""
═══════════════════════════════════════════════════════════
 MediQueue — Error Taxonomy
 Validation errors are raised before any write. Backend errors
 wrap whatever the Supabase client raised. Nothing is retried.
═══════════════════════════════════════════════════════════
"""


class QueueError(Exception):
    """Base for every failure the queue core reports to its caller."""


class ValidationError(QueueError):
    pass


class InvalidTransition(ValidationError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a {current} entry to {target}.")


class BackendError(QueueError):
    def __init__(self, action, cause=None):
        self.action = action
        self.cause = cause
        msg = f"{action} failed"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class ConflictError(BackendError):
    """A guarded write matched no row: the entry changed underneath us."""


class TransferError(BackendError):
    pass


class ConfigError(QueueError):
    pass
