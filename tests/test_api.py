from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from backend.app.main import create_app
from fleet_office.config import Settings
from fleet_office.db import open_database
from fleet_office.repositories import ReferenceDataRepository

ROOT = Path(__file__).resolve().parents[1]
MIGRATIONS_DIR = ROOT / "migrations" / "sqlite"

ADMIN = {"X-User-Id": "1", "X-User-Role": "ADMIN"}
AUDITOR = {"X-User-Id": "2", "X-User-Role": "AUDITOR"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "fleet.db"),
        migrations_dir=str(MIGRATIONS_DIR),
        upload_dir=str(tmp_path / "uploads"),
        export_dir=str(tmp_path / "exports"),
        excel_mapping_path=str(ROOT / "backend" / "config" / "excel_mapping.yaml"),
    )


@pytest.fixture
def refs(settings):
    with open_database(settings.database_path, settings.migrations_dir) as conn:
        repo = ReferenceDataRepository(conn)
        with conn:
            return {
                "vehiculoId": repo.create_vehicle("ABC-123", "Volvo", "FH16"),
                "choferId": repo.create_driver("Carlos", "Quispe"),
                "clienteId": repo.create_client("Minera Andina"),
                "materialId": repo.create_material("Cemento"),
            }


@pytest.fixture
def client(settings, refs):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def trip_payload(refs):
    return dict(
        refs,
        origen="Lima",
        destino="Arequipa",
        fechaSalida="2024-03-01T08:00:00Z",
        fechaLlegadaEstimada="2024-03-02T06:00:00Z",
        tarifa="1500.00",
    )


def create_trip(client, payload):
    response = client.post("/api/viajes", json=payload, headers=ADMIN)
    assert response.status_code == 201, response.text
    return response.json()["datos"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_fetch_trip(client, trip_payload):
    trip = create_trip(client, trip_payload)

    assert trip["estado"] == "PLANNED"
    assert trip["origen"] == "Lima"

    response = client.get(f"/api/viajes/{trip['id']}", headers=AUDITOR)
    body = response.json()
    assert response.status_code == 200
    assert body["exito"] is True
    assert body["datos"]["viaje"]["id"] == trip["id"]
    assert body["datos"]["gastos"] == []
    assert body["datos"]["resumenEconomico"]["ganancia"] == "1500.00"


def test_requests_without_identity_are_rejected(client):
    assert client.get("/api/viajes").status_code == 401


def test_read_only_role_cannot_mutate(client, trip_payload):
    response = client.post("/api/viajes", json=trip_payload, headers=AUDITOR)

    assert response.status_code == 403
    assert response.json()["codigo"] == "PERMISSION_DENIED"
    assert client.get("/api/viajes", headers=AUDITOR).json()["paginacion"]["total"] == 0


def test_domain_validation_reports_every_error(client, trip_payload):
    trip_payload.update(tarifa="0", fechaLlegadaEstimada="2024-02-28T00:00:00Z")

    response = client.post("/api/viajes", json=trip_payload, headers=ADMIN)
    body = response.json()

    assert response.status_code == 422
    assert body["exito"] is False
    assert body["codigo"] == "VALIDATION_ERROR"
    assert "Tariff must be greater than 0" in body["errores"]
    assert "Scheduled departure must be before the estimated arrival" in body["errores"]


def test_malformed_body_is_a_validation_error(client, trip_payload):
    trip_payload["velocidad"] = 90

    response = client.post("/api/viajes", json=trip_payload, headers=ADMIN)

    assert response.status_code == 422
    assert response.json()["codigo"] == "VALIDATION_ERROR"


def test_state_machine_over_http(client, trip_payload):
    trip = create_trip(client, trip_payload)
    url = f"/api/viajes/{trip['id']}/estado"

    skipped = client.patch(url, json={"estado": "COMPLETED"}, headers=ADMIN)
    assert skipped.status_code == 409
    assert skipped.json()["mensaje"] == "Cannot change state from PLANNED to COMPLETED"

    assert client.patch(url, json={"estado": "IN_PROGRESS"}, headers=ADMIN).status_code == 200
    done = client.patch(url, json={"estado": "COMPLETED", "kilometrosReales": 1024}, headers=ADMIN)
    assert done.status_code == 200
    assert done.json()["datos"]["kilometrosReales"] == 1024
    assert done.json()["datos"]["fechaLlegadaReal"] is not None

    edit = client.put(f"/api/viajes/{trip['id']}", json={"observaciones": "late"}, headers=ADMIN)
    assert edit.status_code == 409
    assert edit.json()["codigo"] == "INVALID_STATE"


def test_update_and_list_trips(client, trip_payload):
    trip = create_trip(client, trip_payload)

    response = client.put(f"/api/viajes/{trip['id']}", json={"destino": "Cusco"}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["datos"]["destino"] == "Cusco"

    listing = client.get("/api/viajes", params={"estado": "PLANNED", "limit": 5}, headers=AUDITOR).json()
    assert [item["id"] for item in listing["datos"]] == [trip["id"]]
    assert listing["paginacion"] == {"total": 1, "pagina": 1, "limite": 5, "totalPaginas": 1}

    assert client.get("/api/viajes", params={"limit": 500}, headers=AUDITOR).status_code == 422


def test_expense_with_receipt_and_trip_detail(client, trip_payload, settings):
    trip = create_trip(client, trip_payload)

    response = client.post(
        f"/api/viajes/{trip['id']}/gastos",
        data={"tipoGasto": "FUEL", "monto": "480.25", "fecha": "2024-03-01", "metodoPago": "CASH"},
        files={"comprobante": ("ticket.png", b"\x89PNG fake", "image/png")},
        headers=ADMIN,
    )
    assert response.status_code == 201, response.text
    entry = response.json()["datos"]
    assert entry["tipoGasto"] == "FUEL"
    assert entry["comprobante"]["url"].startswith("/uploads/receipts/")

    client.post(
        f"/api/viajes/{trip['id']}/gastos",
        data={"tipoGasto": "TOLL", "monto": "19.75", "fecha": "2024-03-02", "metodoPago": "CARD"},
        headers=ADMIN,
    )

    summary = client.get(f"/api/viajes/{trip['id']}", headers=AUDITOR).json()["datos"]["resumenEconomico"]
    assert summary == {"ingreso": "1500.00", "gastos": "500.00", "ganancia": "1000.00"}

    listed = client.get(f"/api/viajes/{trip['id']}/gastos", headers=AUDITOR).json()["datos"]
    assert [item["tipoGasto"] for item in listed] == ["TOLL", "FUEL"]


def test_expense_with_unknown_type_is_rejected(client, trip_payload):
    trip = create_trip(client, trip_payload)

    response = client.post(
        f"/api/viajes/{trip['id']}/gastos",
        data={"tipoGasto": "PARTY", "monto": "10", "fecha": "2024-03-01", "metodoPago": "CASH"},
        headers=ADMIN,
    )

    assert response.status_code == 422
    assert response.json()["codigo"] == "VALIDATION_ERROR"


def test_delete_expense_and_trip(client, trip_payload):
    trip = create_trip(client, trip_payload)
    entry = client.post(
        f"/api/viajes/{trip['id']}/gastos",
        data={"tipoGasto": "FOOD", "monto": "30", "fecha": "2024-03-01", "metodoPago": "CASH"},
        headers=ADMIN,
    ).json()["datos"]

    assert client.delete(f"/api/gastos/{entry['id']}", headers=ADMIN).status_code == 200
    assert client.delete(f"/api/gastos/{entry['id']}", headers=ADMIN).status_code == 404

    assert client.delete(f"/api/viajes/{trip['id']}", headers=ADMIN).status_code == 200
    missing = client.get(f"/api/viajes/{trip['id']}", headers=AUDITOR)
    assert missing.status_code == 404
    assert missing.json()["codigo"] == "NOT_FOUND"


def test_export_workbook(client, trip_payload, settings):
    trip = create_trip(client, trip_payload)
    client.post(
        f"/api/viajes/{trip['id']}/gastos",
        data={"tipoGasto": "FUEL", "monto": "500", "fecha": "2024-03-01", "metodoPago": "CASH"},
        headers=ADMIN,
    )

    response = client.get(f"/api/viajes/{trip['id']}/export.xlsx", headers=AUDITOR)

    assert response.status_code == 200
    workbook = load_workbook(BytesIO(response.content))
    sheet = workbook["Liquidacion"]
    assert sheet["B2"].value == trip["id"]
    assert float(sheet["B11"].value) == 1500.0
    assert float(sheet["B12"].value) == 500.0
    assert float(sheet["B13"].value) == 1000.0
    assert workbook["Gastos"]["B2"].value == "FUEL"
    assert list(Path(settings.export_dir).glob("*.xlsx")) == []

    again = client.get(f"/api/viajes/{trip['id']}/export.xlsx", headers=AUDITOR)
    assert again.status_code == 200
    assert load_workbook(BytesIO(again.content))["Liquidacion"]["B2"].value == trip["id"]


def test_dashboard_and_audit_log(client, trip_payload):
    trip = create_trip(client, trip_payload)

    dashboard = client.get("/api/dashboard", params={"anio": 2024, "mes": 3}, headers=AUDITOR).json()["resumen"]
    assert dashboard["vehiculos"] == {"activos": 1, "total": 1}
    assert dashboard["viajesMes"]["total"] == 1
    assert dashboard["viajesMes"]["completados"] == 0

    assert client.get("/api/dashboard", params={"anio": 2024, "mes": 13}, headers=AUDITOR).status_code == 422

    records = client.get("/api/auditoria", params={"entidad": "Viaje"}, headers=AUDITOR).json()["datos"]
    assert records[0]["accion"] == "CREATE"
    assert records[0]["entidadId"] == trip["id"]
    assert records[0]["usuarioId"] == 1


@pytest.mark.parametrize("mes", [0, 13, -1])
def test_dashboard_rejects_months_outside_the_calendar(client, mes):
    response = client.get("/api/dashboard", params={"anio": 2024, "mes": mes}, headers=AUDITOR)

    assert response.status_code == 422
    assert response.json()["codigo"] == "VALIDATION_ERROR"


def test_dashboard_defaults_to_current_month(client):
    dashboard = client.get("/api/dashboard", headers=AUDITOR).json()["resumen"]

    assert 1 <= dashboard["viajesMes"]["mes"] <= 12


@pytest.mark.parametrize("field", ["fechaLlegadaReal", "kilometrosReales"])
def test_update_cannot_set_completion_fields(client, trip_payload, field):
    trip = create_trip(client, trip_payload)
    value = "2024-03-02T00:00:00Z" if field == "fechaLlegadaReal" else 5

    response = client.put(f"/api/viajes/{trip['id']}", json={field: value}, headers=ADMIN)

    assert response.status_code == 422
    stored = client.get(f"/api/viajes/{trip['id']}", headers=AUDITOR).json()["datos"]["viaje"]
    assert stored["fechaLlegadaReal"] is None
    assert stored["kilometrosReales"] is None


@pytest.mark.parametrize("tarifa", ["NaN", "Infinity"])
def test_non_finite_tariff_is_rejected(client, trip_payload, tarifa):
    trip_payload["tarifa"] = tarifa

    response = client.post("/api/viajes", json=trip_payload, headers=ADMIN)

    assert response.status_code == 422
    assert client.get("/api/viajes", headers=AUDITOR).json()["paginacion"]["total"] == 0
