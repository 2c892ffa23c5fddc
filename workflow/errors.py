"""
workflow/errors.py

Error taxonomy for the case lifecycle.

Every error carries a stable ``kind`` string so callers (UI, admin tooling)
can map it to an actionable message without parsing text.  Messages never
contain a Tracking Token.
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all lifecycle failures."""
    kind = "lifecycle_error"


class NotFound(LifecycleError):
    """
    The Tracking Token or Registry ID does not resolve to a record.

    Raised identically for identifiers that never existed and for Tracking
    Tokens destroyed by archival.
    """
    kind = "not_found"

    def __init__(self, tt: str | None = None, registry_id: str | None = None):
        self.tt = tt
        self.registry_id = registry_id
        super().__init__("Record not found.")


class InvalidTransition(LifecycleError):
    kind = "invalid_transition"

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move a case from '{getattr(current, 'value', current)}' "
            f"to '{getattr(target, 'value', target)}'."
        )


class SectionNotVisible(LifecycleError):
    kind = "section_not_visible"

    def __init__(self, section, status):
        self.section = section
        self.status = status
        super().__init__(
            f"Section '{getattr(section, 'value', section)}' is not available "
            f"while the case is '{getattr(status, 'value', status)}'."
        )


class InvalidState(LifecycleError):
    kind = "invalid_state"

    def __init__(self, operation: str, status, detail: str | None = None):
        self.operation = operation
        self.status = status
        message = (
            f"'{operation}' is not allowed while the case is "
            f"'{getattr(status, 'value', status)}'."
        )
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class MissingOutcome(LifecycleError):
    kind = "missing_outcome"

    def __init__(self):
        super().__init__("An outcome must be recorded before the case can be archived.")


class PersistenceError(LifecycleError):
    """The underlying store failed.  Never retried by the lifecycle."""
    kind = "persistence_error"


class CollisionExhausted(LifecycleError):
    """No free Registry ID was found within the bounded number of attempts."""
    kind = "collision_exhausted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"No free Registry ID after {attempts} attempts.")


class RegistryIdCollision(LifecycleError):
    """Raised by a store when an archive write hits an already issued Registry ID."""
    kind = "registry_id_collision"

    def __init__(self, registry_id: str):
        self.registry_id = registry_id
        super().__init__(f"Registry ID {registry_id} is already issued.")
