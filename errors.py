from __future__ import annotations

from typing import Any, Optional


class ExpenseControlError(Exception):
    """Base error; carries a stable ``code`` and structured ``context``."""

    code = "error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "context": self.context}


class NotFound(ExpenseControlError, LookupError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity.capitalize()} {entity_id} not found",
            entity=entity,
            entity_id=entity_id,
        )
        self.entity = entity
        self.entity_id = entity_id


class Unauthorized(ExpenseControlError):
    code = "unauthorized"

    def __init__(
        self,
        actor_id: int,
        role: Any,
        action: str,
        entity: Optional[str] = None,
        entity_id: Optional[Any] = None,
    ) -> None:
        role_value = getattr(role, "value", role)
        target = f" on {entity} {entity_id}" if entity else ""
        super().__init__(
            f"Actor {actor_id} ({role_value}) may not {action}{target}",
            actor_id=actor_id,
            role=role_value,
            action=action,
            entity=entity,
            entity_id=entity_id,
        )
        self.actor_id = actor_id
        self.role = role
        self.action = action


class InvalidTransition(ExpenseControlError):
    code = "invalid_transition"

    def __init__(
        self,
        expense_id: int,
        current: Any,
        requested: Any = None,
        *,
        action: Optional[str] = None,
    ) -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        if requested is None:
            # Field edits and deletes are not status moves; report the action.
            message = f"Cannot {action} expense {expense_id} while it is {current_value}"
        else:
            message = (
                f"Expense {expense_id} cannot move from {current_value} to {requested_value}"
            )
        super().__init__(
            message,
            entity="expense",
            entity_id=expense_id,
            current=current_value,
            requested=requested_value,
            action=action,
        )
        self.expense_id = expense_id
        self.current = current
        self.requested = requested
        self.action = action


class Conflict(ExpenseControlError):
    """Lost a concurrent status update; re-fetch and retry."""

    code = "conflict"
    retryable = True

    def __init__(self, expense_id: int, expected: Any, requested: Any) -> None:
        expected_value = getattr(expected, "value", expected)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            f"Expense {expense_id} changed concurrently; "
            f"it is no longer {expected_value}",
            entity="expense",
            entity_id=expense_id,
            expected=expected_value,
            requested=requested_value,
        )
        self.expense_id = expense_id
        self.expected = expected
        self.requested = requested


class InvalidInput(ExpenseControlError, ValueError):
    code = "invalid_input"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message, field=field)
        self.field = field
