from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from fleet_office.errors import ValidationError


class _ClosedEnum(str, Enum):
    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"Invalid {cls.__name__} '{value}'. Allowed values: {allowed}"
            ) from None


class TripState(_ClosedEnum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ExpenseType(_ClosedEnum):
    FUEL = "FUEL"
    TOLL = "TOLL"
    FOOD = "FOOD"
    LODGING = "LODGING"
    FINE = "FINE"
    OTHER = "OTHER"


class PaymentMethod(_ClosedEnum):
    CASH = "CASH"
    TRANSFER = "TRANSFER"
    CARD = "CARD"


class AuditAction(_ClosedEnum):
    CREATE = "CREATE"
    EDIT = "EDIT"
    DELETE = "DELETE"


class UserRole(_ClosedEnum):
    ADMIN = "ADMIN"
    AUDITOR = "AUDITOR"


def _iso(value: date | datetime | None) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value: Decimal | None) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class NewTrip:
    vehicle_id: int
    driver_id: int
    client_id: int
    material_id: int
    origin: str
    destination: str
    scheduled_departure: datetime
    tariff: Decimal
    estimated_arrival: Optional[datetime] = None
    estimated_distance: Optional[int] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Trip:
    id: int
    vehicle_id: int
    driver_id: int
    client_id: int
    material_id: int
    origin: str
    destination: str
    scheduled_departure: datetime
    tariff: Decimal
    state: TripState
    estimated_arrival: Optional[datetime] = None
    actual_arrival: Optional[datetime] = None
    estimated_distance: Optional[int] = None
    actual_distance: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "vehiculoId": self.vehicle_id,
            "choferId": self.driver_id,
            "clienteId": self.client_id,
            "materialId": self.material_id,
            "origen": self.origin,
            "destino": self.destination,
            "fechaSalida": _iso(self.scheduled_departure),
            "fechaLlegadaEstimada": _iso(self.estimated_arrival),
            "fechaLlegadaReal": _iso(self.actual_arrival),
            "kilometrosEstimados": self.estimated_distance,
            "kilometrosReales": self.actual_distance,
            "tarifa": _money(self.tariff),
            "observaciones": self.notes,
            "estado": self.state.value,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class TripUpdate:
    """Partial edit of a trip. ``None`` means the field was not supplied."""

    origin: Optional[str] = None
    destination: Optional[str] = None
    scheduled_departure: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    estimated_distance: Optional[int] = None
    tariff: Optional[Decimal] = None
    notes: Optional[str] = None

    def supplied_fields(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass(frozen=True)
class CompletionData:
    actual_arrival: Optional[datetime] = None
    actual_distance: Optional[int] = None


@dataclass(frozen=True)
class ReceiptRef:
    url: str
    storage_id: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "storageId": self.storage_id}


@dataclass(frozen=True)
class NewExpense:
    expense_type: ExpenseType
    amount: Decimal
    date: date
    payment_method: PaymentMethod
    description: Optional[str] = None


@dataclass(frozen=True)
class ExpenseEntry:
    id: int
    trip_id: int
    expense_type: ExpenseType
    amount: Optional[Decimal]
    date: date
    payment_method: PaymentMethod
    description: Optional[str] = None
    receipt: Optional[ReceiptRef] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "viajeId": self.trip_id,
            "tipoGasto": self.expense_type.value,
            "monto": _money(self.amount),
            "fecha": _iso(self.date),
            "metodoPago": self.payment_method.value,
            "descripcion": self.description,
            "comprobante": self.receipt.to_dict() if self.receipt else None,
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class EconomicSummary:
    income: Decimal
    expenses: Decimal
    margin: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "ingreso": str(self.income),
            "gastos": str(self.expenses),
            "ganancia": str(self.margin),
        }


@dataclass(frozen=True)
class TripDetail:
    trip: Trip
    expenses: list[ExpenseEntry]
    summary: EconomicSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "viaje": self.trip.to_dict(),
            "gastos": [expense.to_dict() for expense in self.expenses],
            "resumenEconomico": self.summary.to_dict(),
        }


@dataclass(frozen=True)
class MonthlyStatistics:
    year: int
    month: int
    total_trips: int = 0
    completed_trips: int = 0
    tariff_sum: Decimal = Decimal("0")
    expense_sum: Decimal = Decimal("0")

    @property
    def estimated_gain(self) -> Decimal:
        return self.tariff_sum - self.expense_sum

    def to_dict(self) -> dict[str, Any]:
        return {
            "anio": self.year,
            "mes": self.month,
            "total": self.total_trips,
            "completados": self.completed_trips,
            "ingresosTotal": str(self.tariff_sum),
            "gastosTotales": str(self.expense_sum),
            "gananciaEstimada": str(self.estimated_gain),
        }


@dataclass(frozen=True)
class TripFilters:
    state: Optional[TripState] = None
    vehicle_id: Optional[int] = None
    driver_id: Optional[int] = None
    client_id: Optional[int] = None
    departure_from: Optional[datetime] = None
    departure_to: Optional[datetime] = None
    page: int = 1
    limit: int = 20

    MAX_LIMIT = 100

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.page < 1:
            errors.append("page must be >= 1")
        if not 1 <= self.limit <= self.MAX_LIMIT:
            errors.append(f"limit must be between 1 and {self.MAX_LIMIT}")
        if errors:
            raise ValidationError(errors)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class AuditEvent:
    action: AuditAction
    entity_type: str
    entity_id: int
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    source_address: Optional[str] = None


@dataclass(frozen=True)
class AuditRecord:
    id: int
    actor_id: int
    action: AuditAction
    entity_type: str
    entity_id: int
    recorded_at: datetime
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    source_address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "usuarioId": self.actor_id,
            "accion": self.action.value,
            "entidad": self.entity_type,
            "entidadId": self.entity_id,
            "datosAnteriores": self.before,
            "datosNuevos": self.after,
            "ipAddress": self.source_address,
            "fechaHora": self.recorded_at.isoformat(),
        }


@dataclass(frozen=True)
class ReferenceCounts:
    active: int = 0
    total: int = 0


@dataclass(frozen=True)
class ReferenceSummary:
    vehicles: ReferenceCounts = field(default_factory=ReferenceCounts)
    drivers: ReferenceCounts = field(default_factory=ReferenceCounts)
    clients: ReferenceCounts = field(default_factory=ReferenceCounts)
    materials_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "vehiculos": {"activos": self.vehicles.active, "total": self.vehicles.total},
            "choferes": {"activos": self.drivers.active, "total": self.drivers.total},
            "clientes": {"activos": self.clients.active, "total": self.clients.total},
            "materiales": {"total": self.materials_total},
        }


@dataclass(frozen=True)
class Dashboard:
    references: ReferenceSummary
    month: MonthlyStatistics

    def to_dict(self) -> dict[str, Any]:
        payload = self.references.to_dict()
        payload["viajesMes"] = self.month.to_dict()
        return payload
