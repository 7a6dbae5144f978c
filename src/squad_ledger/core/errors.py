"""Error taxonomy shared by the task graph, relationship graph and ledger.

Every error is a ``ValueError`` so callers can keep a single
``except ValueError`` at their boundary.
"""


class LedgerError(ValueError):
    """Base class for all squad-ledger errors."""


class NotFoundError(LedgerError):
    """An operation referenced an id that does not exist."""

    def __init__(self, kind: str, entity_id):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class InvalidTransitionError(LedgerError):
    """A status change was attempted from a state that does not allow it."""

    def __init__(self, kind: str, entity_id, old_status: str, new_status: str):
        self.kind = kind
        self.entity_id = entity_id
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Cannot move {kind} {entity_id} from '{old_status}' to '{new_status}'"
        )


class TaskBlockedError(InvalidTransitionError):
    """A task cannot start or finish while some of its dependencies are not done."""

    def __init__(
        self,
        task_id: str,
        old_status: str,
        blocking_ids: list[str],
        new_status: str = "in_progress",
    ):
        super().__init__("task", task_id, old_status, new_status)
        self.blocking_ids = blocking_ids
        self.args = (
            f"Task {task_id} is blocked by: {', '.join(blocking_ids)}",
        )


class ValidationError(LedgerError):
    """Input failed validation (range, required field, unknown value)."""


class PolicyViolationError(ValidationError):
    """An interaction breaks the policy of its relationship edge."""
