from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from fleet_office.models import TripDetail


@dataclass
class SettlementExportService:
    """Export a trip's economic settlement into a workbook laid out by a YAML mapping."""

    mapping_path: Path = Path("backend/config/excel_mapping.yaml")

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(Path(self.mapping_path))

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with mapping_path.open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)

        for section in ("workbook", "summary", "expenses"):
            if section not in loaded:
                raise ValueError(f"Mapping file is missing the '{section}' section: {mapping_path}")

        return loaded

    @property
    def summary_sheet_name(self) -> str:
        return self.mapping["workbook"]["summary_sheet"]

    @property
    def expenses_sheet_name(self) -> str:
        return self.mapping["workbook"]["expenses_sheet"]

    def generate_export(self, detail: TripDetail, output_path: Path | str) -> Path:
        workbook = Workbook()
        summary_sheet = workbook.active
        summary_sheet.title = self.summary_sheet_name
        expenses_sheet = workbook.create_sheet(self.expenses_sheet_name)

        self._map_summary(summary_sheet, self._summary_values(detail))
        self._map_expenses(expenses_sheet, self._expense_rows(detail))

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)

        return output_path

    @staticmethod
    def _summary_values(detail: TripDetail) -> dict[str, Any]:
        trip = detail.trip
        return {
            "trip_id": trip.id,
            "state": trip.state.value,
            "origin": trip.origin,
            "destination": trip.destination,
            "scheduled_departure": _excel_datetime(trip.scheduled_departure),
            "actual_arrival": _excel_datetime(trip.actual_arrival),
            "estimated_distance": trip.estimated_distance,
            "actual_distance": trip.actual_distance,
            "income": detail.summary.income,
            "expenses": detail.summary.expenses,
            "margin": detail.summary.margin,
        }

    @staticmethod
    def _expense_rows(detail: TripDetail) -> list[dict[str, Any]]:
        return [
            {
                "date": expense.date,
                "expense_type": expense.expense_type.value,
                "payment_method": expense.payment_method.value,
                "description": expense.description,
                "amount": expense.amount,
                "receipt_url": expense.receipt.url if expense.receipt else None,
            }
            for expense in detail.expenses
        ]

    def _map_summary(self, sheet: Worksheet, values: dict[str, Any]) -> None:
        for field, spec in self.mapping["summary"].items():
            cell = sheet[spec["cell"]]
            label = sheet.cell(row=cell.row, column=cell.column - 1)
            label.value = spec.get("label", field)
            label.font = Font(bold=True)
            cell.value = values.get(field)

    def _map_expenses(self, sheet: Worksheet, values: list[dict[str, Any]]) -> None:
        section = self.mapping["expenses"]
        header_row = int(section["header_row"])
        start_row = int(section["start_row"])
        columns = section["columns"]

        for spec in columns.values():
            header = sheet[f"{spec['column']}{header_row}"]
            header.value = spec["header"]
            header.font = Font(bold=True)

        for offset, expense in enumerate(values):
            row = start_row + offset
            for key, spec in columns.items():
                sheet[f"{spec['column']}{row}"] = expense.get(key)

    def get_mandatory_cells(self) -> list[str]:
        verification = self.mapping.get("verification", {})
        mandatory_cells = verification.get("mandatory_cells", [])
        if not isinstance(mandatory_cells, list):
            msg = "verification.mandatory_cells must be a list of cell references"
            raise ValueError(msg)
        return mandatory_cells


def _excel_datetime(value: datetime | None) -> datetime | None:
    # Excel has no timezone support; cells hold naive UTC.
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Utility for validation/testing: read exact cell values from an exported workbook."""
    workbook: Workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
