from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from backend.services.excel_export import SettlementExportService
from fleet_office.config import Settings, configure_logging
from fleet_office.core import utc_now
from fleet_office.db import apply_migrations, open_database
from fleet_office.errors import (
    FleetOfficeError,
    InfrastructureError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from fleet_office.models import (
    AuditAction,
    CompletionData,
    ExpenseType,
    NewExpense,
    NewTrip,
    PaymentMethod,
    TripFilters,
    TripState,
    TripUpdate,
    UserRole,
)
from fleet_office.repositories import AuditRepository
from fleet_office.services import ExpenseLedger, SettlementService, TripService
from fleet_office.storage import LocalBlobStorage, UploadedReceipt

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[FleetOfficeError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (InvalidStateError, 409),
    (InvalidTransitionError, 409),
    (PermissionDeniedError, 403),
    (InfrastructureError, 503),
]


class WirePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class TripCreate(WirePayload):
    vehicle_id: int = Field(alias="vehiculoId")
    driver_id: int = Field(alias="choferId")
    client_id: int = Field(alias="clienteId")
    material_id: int = Field(alias="materialId")
    origin: str = Field(alias="origen")
    destination: str = Field(alias="destino")
    scheduled_departure: datetime = Field(alias="fechaSalida")
    estimated_arrival: Optional[datetime] = Field(default=None, alias="fechaLlegadaEstimada")
    estimated_distance: Optional[int] = Field(default=None, alias="kilometrosEstimados")
    tariff: Decimal = Field(alias="tarifa")
    notes: Optional[str] = Field(default=None, alias="observaciones")

    def to_new_trip(self) -> NewTrip:
        return NewTrip(**self.model_dump())


class TripEdit(WirePayload):
    origin: Optional[str] = Field(default=None, alias="origen")
    destination: Optional[str] = Field(default=None, alias="destino")
    scheduled_departure: Optional[datetime] = Field(default=None, alias="fechaSalida")
    estimated_arrival: Optional[datetime] = Field(default=None, alias="fechaLlegadaEstimada")
    estimated_distance: Optional[int] = Field(default=None, alias="kilometrosEstimados")
    tariff: Optional[Decimal] = Field(default=None, alias="tarifa")
    notes: Optional[str] = Field(default=None, alias="observaciones")

    def to_update(self) -> TripUpdate:
        return TripUpdate(**self.model_dump())


class StateChange(WirePayload):
    state: str = Field(alias="estado")
    actual_arrival: Optional[datetime] = Field(default=None, alias="fechaLlegadaReal")
    actual_distance: Optional[int] = Field(default=None, alias="kilometrosReales")

    def to_completion(self) -> CompletionData:
        return CompletionData(actual_arrival=self.actual_arrival, actual_distance=self.actual_distance)


@dataclass(frozen=True)
class Actor:
    id: int
    role: UserRole


def ok(datos: Any = None, mensaje: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"exito": True}
    if mensaje is not None:
        body["mensaje"] = mensaje
    if datos is not None:
        body["datos"] = datos
    return body


def get_connection(request: Request) -> Iterator[sqlite3.Connection]:
    with open_database(request.app.state.settings.database_path) as conn:
        yield conn


def current_actor(
    x_user_id: Optional[int] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return Actor(id=x_user_id, role=UserRole.parse(x_user_role or UserRole.AUDITOR.value))


def admin_actor(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role is not UserRole.ADMIN:
        raise PermissionDeniedError(
            f"Administrator role required; current role is {actor.role.value} (read-only)"
        )
    return actor


def source_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def trip_service(request: Request, conn: sqlite3.Connection = Depends(get_connection)) -> TripService:
    return TripService(conn, storage=request.app.state.storage)


def expense_ledger(request: Request, conn: sqlite3.Connection = Depends(get_connection)) -> ExpenseLedger:
    return ExpenseLedger(conn, storage=request.app.state.storage)


def settlement_service(conn: sqlite3.Connection = Depends(get_connection)) -> SettlementService:
    return SettlementService(conn)


router = APIRouter(prefix="/api", dependencies=[Depends(current_actor)])


@router.get("/viajes")
def list_trips(
    estado: Optional[str] = None,
    vehiculo_id: Optional[int] = Query(default=None, alias="vehiculoId"),
    chofer_id: Optional[int] = Query(default=None, alias="choferId"),
    cliente_id: Optional[int] = Query(default=None, alias="clienteId"),
    fecha_desde: Optional[datetime] = Query(default=None, alias="fechaDesde"),
    fecha_hasta: Optional[datetime] = Query(default=None, alias="fechaHasta"),
    page: int = 1,
    limit: int = 20,
    service: TripService = Depends(trip_service),
):
    filters = TripFilters(
        state=TripState.parse(estado) if estado else None,
        vehicle_id=vehiculo_id,
        driver_id=chofer_id,
        client_id=cliente_id,
        departure_from=fecha_desde,
        departure_to=fecha_hasta,
        page=page,
        limit=limit,
    )
    trips, total = service.list(filters)
    body = ok([trip.to_dict() for trip in trips])
    body["paginacion"] = {
        "total": total,
        "pagina": page,
        "limite": limit,
        "totalPaginas": -(-total // limit),
    }
    return body


@router.get("/viajes/{trip_id}")
def trip_detail(trip_id: int, service: SettlementService = Depends(settlement_service)):
    return ok(service.get_trip_detail(trip_id).to_dict())


@router.post("/viajes", status_code=201)
def create_trip(
    payload: TripCreate,
    request: Request,
    actor: Actor = Depends(admin_actor),
    service: TripService = Depends(trip_service),
):
    trip = service.create(payload.to_new_trip(), actor.id, source_address(request))
    return ok(trip.to_dict(), "Trip created")


@router.put("/viajes/{trip_id}")
def update_trip(
    trip_id: int,
    payload: TripEdit,
    request: Request,
    actor: Actor = Depends(admin_actor),
    service: TripService = Depends(trip_service),
):
    trip = service.update(trip_id, payload.to_update(), actor.id, source_address(request))
    return ok(trip.to_dict(), "Trip updated")


@router.patch("/viajes/{trip_id}/estado")
def change_trip_state(
    trip_id: int,
    payload: StateChange,
    request: Request,
    actor: Actor = Depends(admin_actor),
    service: TripService = Depends(trip_service),
):
    target = TripState.parse(payload.state)
    trip = service.change_state(trip_id, target, actor.id, payload.to_completion(), source_address(request))
    return ok(trip.to_dict(), f"State changed to {target.value}")


@router.delete("/viajes/{trip_id}")
def delete_trip(
    trip_id: int,
    request: Request,
    actor: Actor = Depends(admin_actor),
    service: TripService = Depends(trip_service),
):
    service.delete(trip_id, actor.id, source_address(request))
    return ok(mensaje="Trip deleted")


@router.get("/viajes/{trip_id}/gastos")
def list_expenses(trip_id: int, ledger: ExpenseLedger = Depends(expense_ledger)):
    return ok([expense.to_dict() for expense in ledger.list_expenses(trip_id)])


@router.post("/viajes/{trip_id}/gastos", status_code=201)
def create_expense(
    trip_id: int,
    request: Request,
    tipo_gasto: str = Form(alias="tipoGasto"),
    monto: Decimal = Form(),
    fecha: date = Form(),
    metodo_pago: str = Form(alias="metodoPago"),
    descripcion: Optional[str] = Form(default=None),
    comprobante: Optional[UploadFile] = File(default=None),
    actor: Actor = Depends(admin_actor),
    ledger: ExpenseLedger = Depends(expense_ledger),
):
    expense = NewExpense(
        expense_type=ExpenseType.parse(tipo_gasto),
        amount=monto,
        date=fecha,
        payment_method=PaymentMethod.parse(metodo_pago),
        description=descripcion,
    )
    receipt = None
    if comprobante is not None and comprobante.filename:
        receipt = UploadedReceipt(
            filename=comprobante.filename,
            content_type=comprobante.content_type or "application/octet-stream",
            content=comprobante.file.read(),
        )
    entry = ledger.add_expense(trip_id, expense, actor.id, receipt, source_address(request))
    return ok(entry.to_dict(), "Expense recorded")


@router.delete("/gastos/{expense_id}")
def delete_expense(
    expense_id: int,
    request: Request,
    actor: Actor = Depends(admin_actor),
    ledger: ExpenseLedger = Depends(expense_ledger),
):
    ledger.delete_expense(expense_id, actor.id, source_address(request))
    return ok(mensaje="Expense deleted")


@router.get("/viajes/{trip_id}/export.xlsx")
def export_trip(
    trip_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    service: SettlementService = Depends(settlement_service),
):
    detail = service.get_trip_detail(trip_id)
    settings: Settings = request.app.state.settings
    export_path = Path(settings.export_dir) / f"viaje-{trip_id}-{uuid4().hex}.xlsx"
    exporter = SettlementExportService(Path(settings.excel_mapping_path))
    exporter.generate_export(detail, export_path)
    background_tasks.add_task(export_path.unlink, missing_ok=True)

    return FileResponse(
        export_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"viaje-{trip_id}.xlsx",
    )


@router.get("/dashboard")
def dashboard(
    anio: Optional[int] = None,
    mes: Optional[int] = None,
    service: SettlementService = Depends(settlement_service),
):
    now = utc_now()
    summary = service.get_dashboard(
        now.year if anio is None else anio,
        now.month if mes is None else mes,
    )
    return {"resumen": summary.to_dict()}


@router.get("/auditoria")
def audit_log(
    entidad: Optional[str] = None,
    accion: Optional[str] = None,
    conn: sqlite3.Connection = Depends(get_connection),
):
    records = AuditRepository(conn).list(
        entity_type=entidad,
        action=AuditAction.parse(accion) if accion else None,
    )
    return ok([record.to_dict() for record in records])


def _status_for(exc: FleetOfficeError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        with open_database(settings.database_path) as conn:
            apply_migrations(conn, settings.migrations_dir)
        logger.info("Fleet office API ready (database: %s)", settings.database_path)
        yield
        logger.info("Fleet office API shutting down")

    app = FastAPI(title="Fleet Office API", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = LocalBlobStorage(Path(settings.upload_dir), settings.receipt_base_url)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FleetOfficeError)
    async def handle_domain_error(request: Request, exc: FleetOfficeError):
        status = _status_for(exc)
        body: dict[str, Any] = {"exito": False, "mensaje": str(exc), "codigo": exc.code}
        if isinstance(exc, ValidationError):
            body["errores"] = exc.errors
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_error(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={"exito": False, "mensaje": "Invalid request", "codigo": ValidationError.code, "errores": errors},
        )

    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
