from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fleet_office.errors import InvalidStateError, InvalidTransitionError, ValidationError
from fleet_office.models import NewTrip, Trip, TripState, TripUpdate


ISO_TS = "%Y-%m-%dT%H:%M:%S.%fZ"

TRANSITIONS: dict[TripState, frozenset[TripState]] = {
    TripState.PLANNED: frozenset({TripState.IN_PROGRESS, TripState.CANCELLED}),
    TripState.IN_PROGRESS: frozenset({TripState.COMPLETED, TripState.CANCELLED}),
    TripState.COMPLETED: frozenset(),
    TripState.CANCELLED: frozenset(),
}

EDITABLE_STATES = frozenset({TripState.PLANNED, TripState.IN_PROGRESS})
DELETABLE_STATE = TripState.PLANNED


@dataclass(frozen=True)
class ReferenceCheck:
    """Outcome of the reference-data lookups for a new trip."""

    vehicle_active: bool
    driver_active: bool
    client_active: bool
    material_found: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to already be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).strftime(ISO_TS)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, ISO_TS).replace(tzinfo=timezone.utc)


def format_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value is not None else None


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """Return the UTC half-open interval ``[start, end)`` covering a calendar month."""
    if not 1 <= month <= 12:
        raise ValidationError(f"month must be between 1 and 12, got {month}")
    if not 1 <= year <= 9998:
        raise ValidationError(f"year out of range: {year}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def ensure_transition(current: TripState, target: TripState) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


def ensure_editable(trip: Trip) -> None:
    if trip.state not in EDITABLE_STATES:
        raise InvalidStateError(
            f"Trip {trip.id} is {trip.state.value}; completed or cancelled trips cannot be edited",
            trip.state,
        )


def ensure_deletable(trip: Trip) -> None:
    if trip.state is not DELETABLE_STATE:
        raise InvalidStateError(
            f"Trip {trip.id} is {trip.state.value}; only PLANNED trips may be deleted",
            trip.state,
        )


def _schedule_and_tariff_errors(
    departure: datetime,
    estimated_arrival: Optional[datetime],
    tariff: Decimal,
) -> list[str]:
    errors: list[str] = []
    if estimated_arrival is not None and as_utc(estimated_arrival) <= as_utc(departure):
        errors.append("Scheduled departure must be before the estimated arrival")
    if not Decimal(tariff).is_finite():
        errors.append("Tariff must be a finite number")
    elif tariff <= 0:
        errors.append("Tariff must be greater than 0")
    return errors


def _distance_errors(values: dict[str, Any]) -> list[str]:
    return [
        f"{name.replace('_', ' ').capitalize()} must not be negative"
        for name in ("estimated_distance", "actual_distance")
        if values.get(name) is not None and values[name] < 0
    ]


def validate_new_trip(new_trip: NewTrip, references: ReferenceCheck) -> None:
    """Collect every violated creation rule and raise them together."""
    errors: list[str] = []
    if not references.vehicle_active:
        errors.append(f"Vehicle {new_trip.vehicle_id} not found or inactive")
    if not references.driver_active:
        errors.append(f"Driver {new_trip.driver_id} not found or inactive")
    if not references.client_active:
        errors.append(f"Client {new_trip.client_id} not found or inactive")
    if not references.material_found:
        errors.append(f"Material {new_trip.material_id} not found")
    for required in ("origin", "destination"):
        if not (getattr(new_trip, required) or "").strip():
            errors.append(f"{required.capitalize()} is required")
    errors.extend(
        _schedule_and_tariff_errors(
            new_trip.scheduled_departure, new_trip.estimated_arrival, new_trip.tariff
        )
    )
    errors.extend(_distance_errors({"estimated_distance": new_trip.estimated_distance}))
    if errors:
        raise ValidationError(errors)


def validate_trip_update(trip: Trip, update: TripUpdate) -> None:
    """Check the trip invariants against the trip as it would look after ``update``."""
    changes = update.supplied_fields()
    errors: list[str] = []
    for required in ("origin", "destination"):
        if required in changes and not changes[required].strip():
            errors.append(f"{required.capitalize()} is required")
    errors.extend(
        _schedule_and_tariff_errors(
            changes.get("scheduled_departure", trip.scheduled_departure),
            changes.get("estimated_arrival", trip.estimated_arrival),
            changes.get("tariff", trip.tariff),
        )
    )
    errors.extend(_distance_errors(changes))
    if errors:
        raise ValidationError(errors)
