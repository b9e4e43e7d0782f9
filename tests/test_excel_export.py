from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
import tempfile
import unittest

from backend.services.excel_export import SettlementExportService, read_cells
from fleet_office.models import (
    EconomicSummary,
    ExpenseEntry,
    ExpenseType,
    PaymentMethod,
    ReceiptRef,
    Trip,
    TripDetail,
    TripState,
)

ROOT = Path(__file__).resolve().parents[1]
MAPPING_PATH = ROOT / "backend" / "config" / "excel_mapping.yaml"


def build_detail() -> TripDetail:
    trip = Trip(
        id=12,
        vehicle_id=1,
        driver_id=1,
        client_id=1,
        material_id=1,
        origin="Lima",
        destination="Arequipa",
        scheduled_departure=datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc),
        actual_arrival=datetime(2024, 3, 2, 7, 30, tzinfo=timezone.utc),
        tariff=Decimal("1000"),
        state=TripState.COMPLETED,
        actual_distance=1024,
    )
    expenses = [
        ExpenseEntry(
            id=2,
            trip_id=12,
            expense_type=ExpenseType.TOLL,
            amount=Decimal("79.50"),
            date=date(2024, 3, 2),
            payment_method=PaymentMethod.CARD,
        ),
        ExpenseEntry(
            id=1,
            trip_id=12,
            expense_type=ExpenseType.FUEL,
            amount=Decimal("120.50"),
            date=date(2024, 3, 1),
            payment_method=PaymentMethod.CASH,
            description="Grifo km 240",
            receipt=ReceiptRef(url="/uploads/receipts/abc-ticket.png", storage_id="receipts/abc-ticket.png"),
        ),
    ]
    summary = EconomicSummary(income=Decimal("1000"), expenses=Decimal("200.00"), margin=Decimal("800.00"))
    return TripDetail(trip=trip, expenses=expenses, summary=summary)


class SettlementExportTestCase(unittest.TestCase):
    def setUp(self):
        self.service = SettlementExportService(MAPPING_PATH)

    def test_summary_cells_follow_the_mapping(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = self.service.generate_export(build_detail(), Path(tmp) / "nested" / "viaje-12.xlsx")
            values = read_cells(
                output,
                ["A2", "B2", "B3", "B6", "B7", "B9", "B11", "B12", "B13"],
                self.service.summary_sheet_name,
            )

        self.assertEqual(values["A2"], "Viaje")
        self.assertEqual(values["B2"], 12)
        self.assertEqual(values["B3"], "COMPLETED")
        self.assertEqual(values["B6"], datetime(2024, 3, 1, 8, 0))
        self.assertEqual(values["B7"], datetime(2024, 3, 2, 7, 30))
        self.assertEqual(values["B9"], 1024)
        self.assertEqual(float(values["B11"]), 1000.0)
        self.assertEqual(float(values["B12"]), 200.0)
        self.assertEqual(float(values["B13"]), 800.0)

    def test_expense_rows_start_below_the_header(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = self.service.generate_export(build_detail(), Path(tmp) / "viaje-12.xlsx")
            rows = read_cells(output, ["A1", "B2", "E2", "B3", "D3", "F3", "B4"], self.service.expenses_sheet_name)

        self.assertEqual(rows["A1"], "Fecha")
        self.assertEqual(rows["B2"], "TOLL")
        self.assertEqual(float(rows["E2"]), 79.5)
        self.assertEqual(rows["B3"], "FUEL")
        self.assertEqual(rows["D3"], "Grifo km 240")
        self.assertEqual(rows["F3"], "/uploads/receipts/abc-ticket.png")
        self.assertIsNone(rows["B4"])

    def test_mandatory_cells_are_filled(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = self.service.generate_export(build_detail(), Path(tmp) / "viaje-12.xlsx")
            cells = self.service.get_mandatory_cells()
            values = read_cells(output, cells, self.service.summary_sheet_name)

        self.assertEqual(cells, ["B2", "B3", "B11", "B12", "B13"])
        self.assertFalse([cell for cell, value in values.items() if value in (None, "")])

    def test_mapping_without_required_section_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            mapping = Path(tmp) / "mapping.yaml"
            mapping.write_text("workbook:\n  summary_sheet: S\n  expenses_sheet: E\n", encoding="utf-8")

            with self.assertRaises(ValueError):
                SettlementExportService(mapping)


if __name__ == "__main__":
    unittest.main()
