from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from fleet_office.db import apply_migrations, connect_sqlite
from fleet_office.models import CompletionData, NewTrip, TripState
from fleet_office.repositories import ReferenceDataRepository
from fleet_office.services import ExpenseLedger, SettlementService, TripService
from fleet_office.storage import LocalBlobStorage

ROOT = Path(__file__).resolve().parents[1]
MIGRATIONS_DIR = ROOT / "migrations" / "sqlite"
ADMIN_ID = 7


@pytest.fixture
def conn():
    conn = connect_sqlite()
    apply_migrations(conn, MIGRATIONS_DIR)
    yield conn
    conn.close()


@pytest.fixture
def references(conn):
    repo = ReferenceDataRepository(conn)
    with conn:
        ids = {
            "vehicle_id": repo.create_vehicle("ABC-123", "Volvo", "FH16"),
            "driver_id": repo.create_driver("Carlos", "Quispe"),
            "client_id": repo.create_client("Minera Andina"),
            "material_id": repo.create_material("Cemento"),
        }
    return ids


@pytest.fixture
def inactive_references(conn):
    repo = ReferenceDataRepository(conn)
    with conn:
        ids = {
            "vehicle_id": repo.create_vehicle("OLD-999", active=False),
            "driver_id": repo.create_driver("Ana", "Rojas", active=False),
            "client_id": repo.create_client("Cliente Cerrado", active=False),
        }
    return ids


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(base_dir=tmp_path / "uploads")


@pytest.fixture
def trip_service(conn, storage):
    return TripService(conn, storage=storage)


@pytest.fixture
def ledger(conn, storage):
    return ExpenseLedger(conn, storage=storage)


@pytest.fixture
def settlement(conn):
    return SettlementService(conn)


@pytest.fixture
def make_trip(references):
    def _make(**overrides):
        values = dict(
            references,
            origin="Lima",
            destination="Arequipa",
            scheduled_departure=datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc),
            tariff=Decimal("500"),
        )
        values.update(overrides)
        return NewTrip(**values)

    return _make


@pytest.fixture
def trip_in_state(trip_service, make_trip):
    """Create a trip and walk it to the requested state."""

    def _walk(state: TripState, **overrides):
        trip = trip_service.create(make_trip(**overrides), ADMIN_ID)
        if state is TripState.IN_PROGRESS:
            trip = trip_service.change_state(trip.id, TripState.IN_PROGRESS, ADMIN_ID)
        elif state is TripState.COMPLETED:
            trip_service.change_state(trip.id, TripState.IN_PROGRESS, ADMIN_ID)
            trip = trip_service.change_state(trip.id, TripState.COMPLETED, ADMIN_ID, CompletionData())
        elif state is TripState.CANCELLED:
            trip = trip_service.change_state(trip.id, TripState.CANCELLED, ADMIN_ID)
        return trip

    return _walk
