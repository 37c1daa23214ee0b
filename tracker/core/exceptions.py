"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once
(see ``tracker.blueprints.register_error_handlers``) and get consistent
HTTP status codes and a machine-readable ``rule`` everywhere.

Every exception carries:
    rule      — the specific condition that failed (e.g. "BaselineLocked"),
                so a UI can explain the block instead of a generic 403.
    benign    — True for idempotency guards the caller may treat as a no-op.
    retryable — True only for store contention / timeouts.

Usage:
    from tracker.core.exceptions import NotFoundError, PermissionDenied

    raise NotFoundError(resource="Milestone", resource_id=42)
    raise PermissionDenied("sign", "deliverables", rule="deny_by_default")
"""


class TrackerError(Exception):
    """Base for every error the core raises on purpose."""

    http_status = 400
    default_rule = "Error"
    benign = False
    retryable = False

    def __init__(self, message: str, *, rule: str | None = None, details: dict | None = None) -> None:
        self.rule = rule or self.default_rule
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {
            "error": str(self),
            "rule": self.rule,
        }
        if self.details:
            body["details"] = self.details
        if self.benign:
            body["benign"] = True
        if self.retryable:
            body["retryable"] = True
        return body


class NotFoundError(TrackerError):
    """Raised when a requested resource does not exist (or is hidden by tombstone).

    Args:
        resource: Human-readable entity name (e.g. "Milestone").
        resource_id: The PK that was looked up.
    """

    http_status = 404
    default_rule = "NotFound"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(TrackerError):
    """Malformed input: unknown entity type, unknown action, missing field.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    http_status = 400
    default_rule = "ValidationError"

    def __init__(self, message: str, details: dict | None = None, *, rule: str | None = None) -> None:
        super().__init__(message, rule=rule, details=details)


class PermissionDenied(TrackerError):
    """The identity may not perform ``action`` on ``entity_type``.

    ``rule`` names the access-control step that produced the denial.
    """

    http_status = 403
    default_rule = "PermissionDenied"

    def __init__(
        self,
        action: str,
        entity_type: str,
        *,
        rule: str | None = None,
        message: str | None = None,
    ) -> None:
        self.action = action
        self.entity_type = entity_type
        super().__init__(
            message or f"Not permitted to '{action}' {entity_type}",
            rule=rule,
            details={"action": action, "entity_type": entity_type},
        )


class NoActiveMembership(TrackerError):
    """The identity has no active organisation membership to act within."""

    http_status = 403
    default_rule = "NoActiveMembership"

    def __init__(self, user_id: int | None, organisation_id: int | None = None) -> None:
        self.user_id = user_id
        self.organisation_id = organisation_id
        msg = f"User {user_id} has no active organisation membership"
        if organisation_id is not None:
            msg += f" in organisation {organisation_id}"
        super().__init__(msg, details={"organisation_id": organisation_id})


class IllegalTransition(TrackerError):
    """The requested action is not legal from the record's current state."""

    http_status = 409
    default_rule = "IllegalTransition"

    def __init__(
        self,
        entity_type: str,
        action: str,
        current_state: str | None,
        *,
        rule: str | None = None,
        message: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.action = action
        self.current_state = current_state
        super().__init__(
            message or f"Cannot '{action}' {entity_type} in state '{current_state}'",
            rule=rule,
            details={"action": action, "current_state": current_state},
        )


class AlreadyInTerminalState(IllegalTransition):
    """Any action on a record that already reached a terminal state."""

    default_rule = "AlreadyInTerminalState"
    benign = True

    def __init__(self, entity_type: str, action: str, current_state: str) -> None:
        super().__init__(
            entity_type,
            action,
            current_state,
            message=f"{entity_type} is already '{current_state}'; '{action}' has no effect",
        )


class UnauthorizedSigner(TrackerError):
    """The identity may sign, but not the requested signature slot."""

    http_status = 403
    default_rule = "UnauthorizedSigner"

    def __init__(self, entity_type: str, slot: str, *, allowed_slots: list[str] | None = None) -> None:
        self.entity_type = entity_type
        self.slot = slot
        super().__init__(
            f"Not authorised to sign the {slot} slot on {entity_type}",
            details={"slot": slot, "allowed_slots": allowed_slots or []},
        )


class MissingPrerequisite(TrackerError):
    """A guard failed; ``details['unmet']`` lists what is still outstanding."""

    http_status = 422
    default_rule = "MissingPrerequisite"

    def __init__(self, message: str, *, rule: str | None = None, unmet: list | None = None) -> None:
        self.unmet = unmet or []
        super().__init__(message, rule=rule, details={"unmet": self.unmet})


class AlreadyLocked(TrackerError):
    """Version 1 of a milestone baseline already exists."""

    http_status = 409
    default_rule = "AlreadyLocked"
    benign = True

    def __init__(self, milestone_id: int) -> None:
        self.milestone_id = milestone_id
        super().__init__(
            f"Milestone {milestone_id} baseline is already locked",
            details={"milestone_id": milestone_id},
        )


class NotDeleted(TrackerError):
    """Restore or purge on a record that is not tombstoned."""

    http_status = 409
    default_rule = "NotDeleted"

    def __init__(self, entity_type: str, record_id: int) -> None:
        self.entity_type = entity_type
        self.record_id = record_id
        super().__init__(f"{entity_type} id={record_id} is not deleted")


class TransientFailure(TrackerError):
    """Store timeout or lock contention; the whole operation may be retried."""

    http_status = 503
    default_rule = "TransientFailure"
    retryable = True
