from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Iterable, Iterator, Optional, Protocol

from fleet_office.core import (
    DELETABLE_STATE,
    EDITABLE_STATES,
    ReferenceCheck,
    ensure_deletable,
    ensure_editable,
    ensure_transition,
    month_bounds,
    utc_now,
    validate_new_trip,
    validate_trip_update,
)
from fleet_office.db import transaction
from fleet_office.errors import (
    FleetOfficeError,
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fleet_office.models import (
    AuditAction,
    AuditEvent,
    CompletionData,
    Dashboard,
    EconomicSummary,
    ExpenseEntry,
    MonthlyStatistics,
    NewExpense,
    NewTrip,
    ReceiptRef,
    Trip,
    TripDetail,
    TripFilters,
    TripState,
    TripUpdate,
)
from fleet_office.repositories import (
    AuditRepository,
    ExpenseRepository,
    ReferenceDataRepository,
    TripRepository,
)
from fleet_office.storage import RECEIPTS_FOLDER, BlobStorage, UploadedReceipt

logger = logging.getLogger(__name__)


class ReferenceDataStore(Protocol):
    def find_active_vehicle(self, vehicle_id: int) -> Optional[dict[str, Any]]:
        ...

    def find_active_driver(self, driver_id: int) -> Optional[dict[str, Any]]:
        ...

    def find_active_client(self, client_id: int) -> Optional[dict[str, Any]]:
        ...

    def find_material(self, material_id: int) -> Optional[dict[str, Any]]:
        ...


class AuditEmitter(Protocol):
    def record(self, actor_id: int, event: AuditEvent) -> Any:
        ...


@contextmanager
def collaborator(name: str) -> Iterator[None]:
    """Turn any non-domain failure of ``name`` into an ``InfrastructureError``."""
    try:
        yield
    except FleetOfficeError:
        raise
    except Exception as exc:
        logger.exception("%s failed", name)
        raise InfrastructureError(f"{name} failed: {exc}") from exc


class _TripBoundService:
    def __init__(self, conn: sqlite3.Connection, audit: Optional[AuditEmitter] = None):
        self.conn = conn
        self.trips = TripRepository(conn)
        self.expenses = ExpenseRepository(conn)
        self.audit = audit or AuditRepository(conn)

    def _require_trip(self, trip_id: int) -> Trip:
        trip = self.trips.get_by_id(trip_id)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        return trip

    def _emit(self, actor_id: int, event: AuditEvent) -> None:
        # Runs inside the caller's transaction so a failed audit rolls the write back.
        with collaborator("Audit emitter"):
            self.audit.record(actor_id, event)


class TripService(_TripBoundService):
    """Gatekeeper for every trip mutation."""

    ENTITY = "Viaje"

    def __init__(
        self,
        conn: sqlite3.Connection,
        references: Optional[ReferenceDataStore] = None,
        audit: Optional[AuditEmitter] = None,
        storage: Optional[BlobStorage] = None,
    ):
        super().__init__(conn, audit)
        self.references = references or ReferenceDataRepository(conn)
        self.storage = storage

    def get(self, trip_id: int) -> Trip:
        return self._require_trip(trip_id)

    def list(self, filters: Optional[TripFilters] = None) -> tuple[list[Trip], int]:
        return self.trips.list(filters or TripFilters())

    def _check_references(self, new_trip: NewTrip) -> ReferenceCheck:
        with collaborator("Reference data store"):
            return ReferenceCheck(
                vehicle_active=self.references.find_active_vehicle(new_trip.vehicle_id) is not None,
                driver_active=self.references.find_active_driver(new_trip.driver_id) is not None,
                client_active=self.references.find_active_client(new_trip.client_id) is not None,
                material_found=self.references.find_material(new_trip.material_id) is not None,
            )

    def create(self, new_trip: NewTrip, actor_id: int, source_address: Optional[str] = None) -> Trip:
        with transaction(self.conn):
            validate_new_trip(new_trip, self._check_references(new_trip))
            trip_id = self.trips.create(new_trip)
            trip = self._require_trip(trip_id)
            self._emit(
                actor_id,
                AuditEvent(
                    action=AuditAction.CREATE,
                    entity_type=self.ENTITY,
                    entity_id=trip_id,
                    after=trip.to_dict(),
                    source_address=source_address,
                ),
            )
        logger.info("Trip %s created by user %s", trip_id, actor_id)
        return trip

    def update(
        self,
        trip_id: int,
        update: TripUpdate,
        actor_id: int,
        source_address: Optional[str] = None,
    ) -> Trip:
        with transaction(self.conn):
            before = self._require_trip(trip_id)
            ensure_editable(before)
            changes = update.supplied_fields()
            if not changes:
                return before
            validate_trip_update(before, update)
            if not self.trips.update_fields(trip_id, changes, EDITABLE_STATES):
                ensure_editable(self._require_trip(trip_id))
                raise InfrastructureError(f"Trip {trip_id} could not be updated")
            after = self._require_trip(trip_id)
            self._emit(
                actor_id,
                AuditEvent(
                    action=AuditAction.EDIT,
                    entity_type=self.ENTITY,
                    entity_id=trip_id,
                    before=before.to_dict(),
                    after=after.to_dict(),
                    source_address=source_address,
                ),
            )
        logger.info("Trip %s updated by user %s: %s", trip_id, actor_id, sorted(changes))
        return after

    def change_state(
        self,
        trip_id: int,
        target: TripState | str,
        actor_id: int,
        completion: Optional[CompletionData] = None,
        source_address: Optional[str] = None,
    ) -> Trip:
        target = TripState.parse(target)
        with transaction(self.conn):
            trip = self._require_trip(trip_id)
            ensure_transition(trip.state, target)

            fields: dict[str, Any] = {}
            if target is TripState.COMPLETED:
                completion = completion or CompletionData()
                fields["actual_arrival"] = completion.actual_arrival or utc_now()
                if completion.actual_distance is not None:
                    if completion.actual_distance < 0:
                        raise ValidationError("Actual distance must not be negative")
                    fields["actual_distance"] = completion.actual_distance

            if not self.trips.transition(trip_id, trip.state, target, fields):
                # Someone else moved the trip first; report against what is stored now.
                raise InvalidTransitionError(self._require_trip(trip_id).state, target)

            updated = self._require_trip(trip_id)
            snapshot = updated.to_dict()
            after = {"estado": target.value}
            if "actual_arrival" in fields:
                after["fechaLlegadaReal"] = snapshot["fechaLlegadaReal"]
            if "actual_distance" in fields:
                after["kilometrosReales"] = snapshot["kilometrosReales"]
            self._emit(
                actor_id,
                AuditEvent(
                    action=AuditAction.EDIT,
                    entity_type=self.ENTITY,
                    entity_id=trip_id,
                    before={"estado": trip.state.value},
                    after=after,
                    source_address=source_address,
                ),
            )
        logger.info(
            "Trip %s moved from %s to %s by user %s",
            trip_id,
            trip.state.value,
            target.value,
            actor_id,
        )
        return updated

    def delete(self, trip_id: int, actor_id: int, source_address: Optional[str] = None) -> Trip:
        with transaction(self.conn):
            trip = self._require_trip(trip_id)
            ensure_deletable(trip)
            receipt_ids = self.expenses.receipt_ids_for_trip(trip_id)
            if not self.trips.delete_if_state(trip_id, DELETABLE_STATE):
                ensure_deletable(self._require_trip(trip_id))
                raise InfrastructureError(f"Trip {trip_id} could not be deleted")
            self._emit(
                actor_id,
                AuditEvent(
                    action=AuditAction.DELETE,
                    entity_type=self.ENTITY,
                    entity_id=trip_id,
                    before=trip.to_dict(),
                    source_address=source_address,
                ),
            )
        logger.info("Trip %s deleted by user %s", trip_id, actor_id)
        discard_receipts(self.storage, receipt_ids)
        return trip


class ExpenseLedger(_TripBoundService):
    """Per-trip expense entries and their receipts."""

    ENTITY = "Gasto"

    def __init__(
        self,
        conn: sqlite3.Connection,
        storage: Optional[BlobStorage] = None,
        audit: Optional[AuditEmitter] = None,
    ):
        super().__init__(conn, audit)
        self.storage = storage

    def list_expenses(self, trip_id: int) -> list[ExpenseEntry]:
        self._require_trip(trip_id)
        return self.expenses.list_for_trip(trip_id)

    def sum_for_trip(self, trip_id: int) -> Decimal:
        return self.expenses.sum_for_trip(trip_id)

    def add_expense(
        self,
        trip_id: int,
        expense: NewExpense,
        actor_id: int,
        receipt: Optional[UploadedReceipt] = None,
        source_address: Optional[str] = None,
    ) -> ExpenseEntry:
        if not Decimal(expense.amount).is_finite():
            raise ValidationError("Amount must be a finite number")
        if expense.amount < 0:
            raise ValidationError("Amount must not be negative")
        ensure_editable(self._require_trip(trip_id))

        stored: Optional[ReceiptRef] = None
        if receipt is not None:
            receipt.validate()
            if self.storage is None:
                raise InfrastructureError("No receipt storage configured")
            with collaborator("Receipt storage"):
                blob = self.storage.store(receipt.content, RECEIPTS_FOLDER, receipt.filename)
            stored = ReceiptRef(url=blob.url, storage_id=blob.storage_id)

        try:
            with transaction(self.conn):
                ensure_editable(self._require_trip(trip_id))
                expense_id = self.expenses.create(trip_id, expense, stored)
                entry = self.expenses.get_by_id(expense_id)
                self._emit(
                    actor_id,
                    AuditEvent(
                        action=AuditAction.CREATE,
                        entity_type=self.ENTITY,
                        entity_id=expense_id,
                        after=entry.to_dict(),
                        source_address=source_address,
                    ),
                )
        except Exception:
            if stored is not None:
                discard_receipts(self.storage, [stored.storage_id])
            raise
        logger.info("Expense %s (%s %s) added to trip %s", expense_id, expense.expense_type.value, expense.amount, trip_id)
        return entry

    def delete_expense(self, expense_id: int, actor_id: int, source_address: Optional[str] = None) -> ExpenseEntry:
        with transaction(self.conn):
            entry = self.expenses.get_by_id(expense_id)
            if entry is None:
                raise NotFoundError("Expense", expense_id)
            ensure_editable(self._require_trip(entry.trip_id))
            self.expenses.delete(expense_id)
            self._emit(
                actor_id,
                AuditEvent(
                    action=AuditAction.DELETE,
                    entity_type=self.ENTITY,
                    entity_id=expense_id,
                    before=entry.to_dict(),
                    source_address=source_address,
                ),
            )
        logger.info("Expense %s deleted from trip %s", expense_id, entry.trip_id)
        if entry.receipt is not None:
            discard_receipts(self.storage, [entry.receipt.storage_id])
        return entry


class SettlementService:
    """Derives the economic summary of trips and months. Nothing here is cached."""

    def __init__(self, conn: sqlite3.Connection, references: Optional[ReferenceDataRepository] = None):
        self.conn = conn
        self.trips = TripRepository(conn)
        self.expenses = ExpenseRepository(conn)
        self.references = references or ReferenceDataRepository(conn)

    @staticmethod
    def summarize(trip: Trip, expenses: Iterable[ExpenseEntry]) -> EconomicSummary:
        total = sum((e.amount for e in expenses if e.amount is not None), Decimal("0"))
        return EconomicSummary(income=trip.tariff, expenses=total, margin=trip.tariff - total)

    def get_trip_detail(self, trip_id: int) -> TripDetail:
        trip = self.trips.get_by_id(trip_id)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        expenses = self.expenses.list_for_trip(trip_id)
        return TripDetail(trip=trip, expenses=expenses, summary=self.summarize(trip, expenses))

    def get_monthly_statistics(self, year: int, month: int) -> MonthlyStatistics:
        start, end = month_bounds(year, month)
        completed = self.trips.tariffs_departing(start, end, TripState.COMPLETED)
        return MonthlyStatistics(
            year=year,
            month=month,
            total_trips=self.trips.count_departing(start, end),
            completed_trips=len(completed),
            tariff_sum=sum(completed, Decimal("0")),
            expense_sum=self.expenses.sum_for_trips_departing(start, end),
        )

    def get_dashboard(self, year: int, month: int) -> Dashboard:
        return Dashboard(
            references=self.references.count_summary(),
            month=self.get_monthly_statistics(year, month),
        )


def discard_receipts(storage: Optional[BlobStorage], storage_ids: Iterable[str]) -> None:
    """Remove stored receipts whose database rows are already gone.

    Failures are logged, not raised: the database change has been committed.
    """
    if storage is None:
        return
    for storage_id in storage_ids:
        try:
            storage.delete(storage_id)
        except Exception:
            logger.exception("Could not delete receipt %s; it is now orphaned", storage_id)
