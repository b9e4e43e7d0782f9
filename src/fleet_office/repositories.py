from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

from fleet_office.core import (
    format_date,
    format_timestamp,
    parse_date,
    parse_timestamp,
    utc_now,
)
from fleet_office.models import (
    AuditAction,
    AuditEvent,
    AuditRecord,
    ExpenseEntry,
    ExpenseType,
    NewExpense,
    NewTrip,
    PaymentMethod,
    ReceiptRef,
    ReferenceCounts,
    ReferenceSummary,
    Trip,
    TripFilters,
    TripState,
)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return format_date(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _sum_amounts(rows: Iterable[sqlite3.Row]) -> Decimal:
    total = Decimal("0")
    for row in rows:
        if row[0] is not None:
            total += Decimal(row[0])
    return total


class ReferenceDataRepository:
    """Vehicles, drivers, clients and materials as seen by the trip core."""

    ACTIVE = "ACTIVO"
    INACTIVE = "INACTIVO"

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _find(self, table: str, entity_id: int, active_only: bool) -> Optional[dict[str, Any]]:
        sql = f"SELECT * FROM {table} WHERE id = ?"
        params: list[Any] = [entity_id]
        if active_only:
            sql += " AND estado = ?"
            params.append(self.ACTIVE)
        row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def find_active_vehicle(self, vehicle_id: int) -> Optional[dict[str, Any]]:
        return self._find("vehiculo", vehicle_id, active_only=True)

    def find_active_driver(self, driver_id: int) -> Optional[dict[str, Any]]:
        return self._find("chofer", driver_id, active_only=True)

    def find_active_client(self, client_id: int) -> Optional[dict[str, Any]]:
        return self._find("cliente", client_id, active_only=True)

    def find_material(self, material_id: int) -> Optional[dict[str, Any]]:
        return self._find("material", material_id, active_only=False)

    def _status(self, active: bool) -> str:
        return self.ACTIVE if active else self.INACTIVE

    def create_vehicle(self, plate: str, brand: str | None = None, model: str | None = None, active: bool = True) -> int:
        cursor = self.conn.execute(
            "INSERT INTO vehiculo(placa, marca, modelo, estado) VALUES (?, ?, ?, ?)",
            (plate, brand, model, self._status(active)),
        )
        return int(cursor.lastrowid)

    def create_driver(self, first_names: str, last_names: str, active: bool = True) -> int:
        cursor = self.conn.execute(
            "INSERT INTO chofer(nombres, apellidos, estado) VALUES (?, ?, ?)",
            (first_names, last_names, self._status(active)),
        )
        return int(cursor.lastrowid)

    def create_client(self, name: str, active: bool = True) -> int:
        cursor = self.conn.execute(
            "INSERT INTO cliente(nombre_razon_social, estado) VALUES (?, ?)",
            (name, self._status(active)),
        )
        return int(cursor.lastrowid)

    def create_material(self, name: str, unit: str | None = None, hazardous: bool = False) -> int:
        cursor = self.conn.execute(
            "INSERT INTO material(nombre, unidad_medida, es_peligroso) VALUES (?, ?, ?)",
            (name, unit, int(hazardous)),
        )
        return int(cursor.lastrowid)

    def _counts(self, table: str) -> ReferenceCounts:
        row = self.conn.execute(
            f"SELECT COUNT(*) AS total, COALESCE(SUM(estado = ?), 0) AS active FROM {table}",
            (self.ACTIVE,),
        ).fetchone()
        return ReferenceCounts(active=int(row["active"]), total=int(row["total"]))

    def count_summary(self) -> ReferenceSummary:
        materials = self.conn.execute("SELECT COUNT(*) FROM material").fetchone()[0]
        return ReferenceSummary(
            vehicles=self._counts("vehiculo"),
            drivers=self._counts("chofer"),
            clients=self._counts("cliente"),
            materials_total=int(materials),
        )


class TripRepository:
    COLUMNS = {
        "origin": "origen",
        "destination": "destino",
        "scheduled_departure": "fecha_salida",
        "estimated_arrival": "fecha_llegada_estimada",
        "actual_arrival": "fecha_llegada_real",
        "estimated_distance": "kilometros_estimados",
        "actual_distance": "kilometros_reales",
        "tariff": "tarifa",
        "notes": "observaciones",
    }

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Trip:
        return Trip(
            id=row["id"],
            vehicle_id=row["vehiculo_id"],
            driver_id=row["chofer_id"],
            client_id=row["cliente_id"],
            material_id=row["material_id"],
            origin=row["origen"],
            destination=row["destino"],
            scheduled_departure=parse_timestamp(row["fecha_salida"]),
            estimated_arrival=parse_timestamp(row["fecha_llegada_estimada"]),
            actual_arrival=parse_timestamp(row["fecha_llegada_real"]),
            estimated_distance=row["kilometros_estimados"],
            actual_distance=row["kilometros_reales"],
            tariff=Decimal(row["tarifa"]),
            notes=row["observaciones"],
            state=TripState(row["estado"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def create(self, trip: NewTrip) -> int:
        now = format_timestamp(utc_now())
        cursor = self.conn.execute(
            """
            INSERT INTO viaje(
                vehiculo_id, chofer_id, cliente_id, material_id, origen, destino,
                fecha_salida, fecha_llegada_estimada, kilometros_estimados, tarifa,
                observaciones, estado, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trip.vehicle_id,
                trip.driver_id,
                trip.client_id,
                trip.material_id,
                trip.origin,
                trip.destination,
                _normalize_value(trip.scheduled_departure),
                _normalize_value(trip.estimated_arrival),
                trip.estimated_distance,
                _normalize_value(trip.tariff),
                trip.notes,
                TripState.PLANNED.value,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    def get_by_id(self, trip_id: int) -> Optional[Trip]:
        row = self.conn.execute("SELECT * FROM viaje WHERE id = ?", (trip_id,)).fetchone()
        return self._from_row(row) if row else None

    def list(self, filters: TripFilters) -> tuple[list[Trip], int]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("estado", filters.state),
            ("vehiculo_id", filters.vehicle_id),
            ("chofer_id", filters.driver_id),
            ("cliente_id", filters.client_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(_normalize_value(value))
        if filters.departure_from is not None:
            clauses.append("fecha_salida >= ?")
            params.append(_normalize_value(filters.departure_from))
        if filters.departure_to is not None:
            clauses.append("fecha_salida <= ?")
            params.append(_normalize_value(filters.departure_to))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total = self.conn.execute(f"SELECT COUNT(*) FROM viaje {where}", params).fetchone()[0]
        rows = self.conn.execute(
            f"SELECT * FROM viaje {where} ORDER BY fecha_salida DESC, id DESC LIMIT ? OFFSET ?",
            [*params, filters.limit, filters.offset],
        ).fetchall()
        return [self._from_row(row) for row in rows], int(total)

    def _update_where(self, trip_id: int, fields: dict[str, Any], state_clause: str, state_params: list[str]) -> bool:
        invalid = set(fields) - set(self.COLUMNS) - {"state"}
        if invalid:
            raise ValueError(f"Invalid trip fields: {sorted(invalid)}")

        assignments = [
            f"{'estado' if name == 'state' else self.COLUMNS[name]} = ?" for name in fields
        ]
        assignments.append("updated_at = ?")
        values = [_normalize_value(value) for value in fields.values()]
        values.append(format_timestamp(utc_now()))
        cursor = self.conn.execute(
            f"UPDATE viaje SET {', '.join(assignments)} WHERE id = ? AND {state_clause}",
            [*values, trip_id, *state_params],
        )
        return cursor.rowcount == 1

    def update_fields(self, trip_id: int, fields: dict[str, Any], allowed_states: Iterable[TripState]) -> bool:
        """Apply ``fields`` only while the trip is still in one of ``allowed_states``."""
        states = [state.value for state in allowed_states]
        placeholders = ", ".join("?" for _ in states)
        return self._update_where(trip_id, dict(fields), f"estado IN ({placeholders})", states)

    def transition(self, trip_id: int, expected: TripState, target: TripState, fields: dict[str, Any] | None = None) -> bool:
        """Move the trip to ``target`` only if it is still in ``expected``."""
        changes = dict(fields or {})
        changes["state"] = target
        return self._update_where(trip_id, changes, "estado = ?", [expected.value])

    def delete_if_state(self, trip_id: int, state: TripState) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM viaje WHERE id = ? AND estado = ?", (trip_id, state.value)
        )
        return cursor.rowcount == 1

    def count_departing(self, start: datetime, end: datetime) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM viaje WHERE fecha_salida >= ? AND fecha_salida < ?",
            (_normalize_value(start), _normalize_value(end)),
        ).fetchone()
        return int(row[0])

    def tariffs_departing(self, start: datetime, end: datetime, state: TripState) -> list[Decimal]:
        rows = self.conn.execute(
            """
            SELECT tarifa FROM viaje
            WHERE estado = ? AND fecha_salida >= ? AND fecha_salida < ?
            """,
            (state.value, _normalize_value(start), _normalize_value(end)),
        ).fetchall()
        return [Decimal(row["tarifa"]) for row in rows]


class ExpenseRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _from_row(row: sqlite3.Row) -> ExpenseEntry:
        receipt = None
        if row["comprobante_storage_id"]:
            receipt = ReceiptRef(url=row["comprobante_url"], storage_id=row["comprobante_storage_id"])
        return ExpenseEntry(
            id=row["id"],
            trip_id=row["viaje_id"],
            expense_type=ExpenseType(row["tipo_gasto"]),
            amount=_decimal(row["monto"]),
            date=parse_date(row["fecha"]),
            payment_method=PaymentMethod(row["metodo_pago"]),
            description=row["descripcion"],
            receipt=receipt,
            created_at=parse_timestamp(row["created_at"]),
        )

    def create(self, trip_id: int, expense: NewExpense, receipt: ReceiptRef | None = None) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO gasto(
                viaje_id, tipo_gasto, monto, fecha, metodo_pago, descripcion,
                comprobante_url, comprobante_storage_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trip_id,
                _normalize_value(expense.expense_type),
                _normalize_value(expense.amount),
                _normalize_value(expense.date),
                _normalize_value(expense.payment_method),
                expense.description,
                receipt.url if receipt else None,
                receipt.storage_id if receipt else None,
                format_timestamp(utc_now()),
            ),
        )
        return int(cursor.lastrowid)

    def get_by_id(self, expense_id: int) -> Optional[ExpenseEntry]:
        row = self.conn.execute("SELECT * FROM gasto WHERE id = ?", (expense_id,)).fetchone()
        return self._from_row(row) if row else None

    def list_for_trip(self, trip_id: int) -> list[ExpenseEntry]:
        rows = self.conn.execute(
            "SELECT * FROM gasto WHERE viaje_id = ? ORDER BY fecha DESC, id DESC",
            (trip_id,),
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def sum_for_trip(self, trip_id: int) -> Decimal:
        rows = self.conn.execute("SELECT monto FROM gasto WHERE viaje_id = ?", (trip_id,))
        return _sum_amounts(rows)

    def sum_for_trips_departing(self, start: datetime, end: datetime) -> Decimal:
        rows = self.conn.execute(
            """
            SELECT g.monto FROM gasto g
            JOIN viaje v ON v.id = g.viaje_id
            WHERE v.fecha_salida >= ? AND v.fecha_salida < ?
            """,
            (_normalize_value(start), _normalize_value(end)),
        )
        return _sum_amounts(rows)

    def receipt_ids_for_trip(self, trip_id: int) -> list[str]:
        rows = self.conn.execute(
            "SELECT comprobante_storage_id FROM gasto WHERE viaje_id = ? AND comprobante_storage_id IS NOT NULL",
            (trip_id,),
        ).fetchall()
        return [row[0] for row in rows]

    def delete(self, expense_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM gasto WHERE id = ?", (expense_id,))
        return cursor.rowcount == 1


class AuditRepository:
    DEFAULT_LIMIT = 100

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _load(value: Optional[str]) -> Optional[dict[str, Any]]:
        return json.loads(value) if value else None

    def record(self, actor_id: int, event: AuditEvent) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO registro_auditoria(
                usuario_id, accion, entidad, entidad_id, datos_anteriores,
                datos_nuevos, ip_address, fecha_hora
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                actor_id,
                event.action.value,
                event.entity_type,
                event.entity_id,
                json.dumps(event.before, default=str) if event.before is not None else None,
                json.dumps(event.after, default=str) if event.after is not None else None,
                event.source_address,
                format_timestamp(utc_now()),
            ),
        )
        return int(cursor.lastrowid)

    def list(
        self,
        entity_type: str | None = None,
        action: AuditAction | None = None,
        entity_id: int | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[AuditRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if entity_type:
            clauses.append("entidad = ?")
            params.append(entity_type)
        if action:
            clauses.append("accion = ?")
            params.append(action.value)
        if entity_id is not None:
            clauses.append("entidad_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM registro_auditoria {where} ORDER BY fecha_hora DESC, id DESC LIMIT ?",
            [*params, limit],
        ).fetchall()
        return [
            AuditRecord(
                id=row["id"],
                actor_id=row["usuario_id"],
                action=AuditAction(row["accion"]),
                entity_type=row["entidad"],
                entity_id=row["entidad_id"],
                recorded_at=parse_timestamp(row["fecha_hora"]),
                before=self._load(row["datos_anteriores"]),
                after=self._load(row["datos_nuevos"]),
                source_address=row["ip_address"],
            )
            for row in rows
        ]
