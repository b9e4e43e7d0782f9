from .errors import (
    FleetOfficeError,
    InfrastructureError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .models import (
    CompletionData,
    ExpenseEntry,
    ExpenseType,
    NewExpense,
    NewTrip,
    PaymentMethod,
    Trip,
    TripState,
    TripUpdate,
)
from .services import ExpenseLedger, SettlementService, TripService

__all__ = [
    "CompletionData",
    "ExpenseEntry",
    "ExpenseLedger",
    "ExpenseType",
    "FleetOfficeError",
    "InfrastructureError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NewExpense",
    "NewTrip",
    "NotFoundError",
    "PaymentMethod",
    "PermissionDeniedError",
    "SettlementService",
    "Trip",
    "TripService",
    "TripState",
    "TripUpdate",
    "ValidationError",
]
