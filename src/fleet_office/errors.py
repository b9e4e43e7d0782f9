from __future__ import annotations

from typing import Any, Sequence


class FleetOfficeError(Exception):
    """Base class for every error raised by the trip core."""

    code = "FLEET_OFFICE_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class ValidationError(FleetOfficeError, ValueError):
    """Raised with every violated precondition, not just the first one."""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: Sequence[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


class NotFoundError(FleetOfficeError, LookupError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateError(FleetOfficeError):
    """Raised when the operation is forbidden for the trip's current state."""

    code = "INVALID_STATE"

    def __init__(self, message: str, state: Any = None):
        self.state = state
        super().__init__(message)


class InvalidTransitionError(FleetOfficeError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: Any, target: Any):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot change state from {_name(current)} to {_name(target)}"
        )


class PermissionDeniedError(FleetOfficeError):
    code = "PERMISSION_DENIED"


class InfrastructureError(FleetOfficeError):
    """Storage, audit or blob collaborator failure. Aborts the operation."""

    code = "INFRASTRUCTURE_ERROR"


def _name(value: Any) -> str:
    return getattr(value, "value", str(value))
