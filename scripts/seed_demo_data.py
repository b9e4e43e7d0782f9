from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

from backend.services.excel_export import SettlementExportService, read_cells
from fleet_office.config import Settings, configure_logging
from fleet_office.db import apply_migrations, open_database, transaction
from fleet_office.models import CompletionData, ExpenseType, NewExpense, NewTrip, PaymentMethod, TripState
from fleet_office.repositories import ReferenceDataRepository
from fleet_office.services import ExpenseLedger, SettlementService, TripService

ADMIN_USER_ID = 1


def seed_reference_data(references: ReferenceDataRepository) -> dict[str, int]:
    return {
        "vehicle_id": references.create_vehicle("ABC-123", "Volvo", "FH16"),
        "driver_id": references.create_driver("Carlos", "Quispe"),
        "client_id": references.create_client("Minera Andina S.A.C."),
        "material_id": references.create_material("Cemento", unit="bolsas"),
    }


def main() -> int:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    with open_database(settings.database_path) as conn:
        apply_migrations(conn, settings.migrations_dir)
        with transaction(conn):
            refs = seed_reference_data(ReferenceDataRepository(conn))

        trips = TripService(conn)
        ledger = ExpenseLedger(conn)

        trip = trips.create(
            NewTrip(
                origin="Lima",
                destination="Arequipa",
                scheduled_departure=datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc),
                estimated_arrival=datetime(2026, 2, 2, 6, 0, tzinfo=timezone.utc),
                estimated_distance=1010,
                tariff=Decimal("4500.00"),
                **refs,
            ),
            ADMIN_USER_ID,
        )
        trips.change_state(trip.id, TripState.IN_PROGRESS, ADMIN_USER_ID)
        for expense_type, amount in ((ExpenseType.FUEL, "980.50"), (ExpenseType.TOLL, "145.00")):
            ledger.add_expense(
                trip.id,
                NewExpense(
                    expense_type=expense_type,
                    amount=Decimal(amount),
                    date=date(2026, 2, 1),
                    payment_method=PaymentMethod.CASH,
                ),
                ADMIN_USER_ID,
            )
        trips.change_state(trip.id, TripState.COMPLETED, ADMIN_USER_ID, CompletionData(actual_distance=1024))

        detail = SettlementService(conn).get_trip_detail(trip.id)

    exporter = SettlementExportService(Path(settings.excel_mapping_path))
    output_path = Path(settings.export_dir) / f"viaje-{trip.id}.xlsx"
    exporter.generate_export(detail, output_path)

    values = read_cells(output_path, exporter.get_mandatory_cells(), exporter.summary_sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing mandatory values in:", ", ".join(missing))
        return 1

    print(f"Seeded trip {trip.id} with margin {detail.summary.margin}. Export generated at {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
