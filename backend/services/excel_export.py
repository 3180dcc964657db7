from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from yeobi.ledger import Ledger, LedgerRow
from yeobi.logging import get_logger, log_event

logger = get_logger(__name__)

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[1] / "config" / "ledger_export.yaml"

_GRADE_LABELS = {"staff": "직원", "executive": "임원"}


@dataclass
class ExcelExportService:
    """Export a settlement ledger into a workbook laid out by a YAML mapping."""

    mapping_path: Path = DEFAULT_MAPPING_PATH

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(Path(self.mapping_path))

    @property
    def sheet_name(self) -> str:
        return self.mapping["workbook"]["sheet_name"]

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with mapping_path.open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)
        for section in ("workbook", "meta", "rows", "summary"):
            if section not in loaded:
                raise ValueError(f"Mapping file is missing the '{section}' section: {mapping_path}")

        return loaded

    def render(self, ledger: Ledger, user_name: str = "", organization: str = "식품안전정보원") -> Workbook:
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = self.sheet_name

        title_cell = self.mapping["workbook"].get("title_cell")
        if title_cell:
            worksheet[title_cell] = self.mapping["workbook"].get("title")
            worksheet[title_cell].font = Font(bold=True, size=14)

        self._map_meta(
            worksheet,
            {
                "organization": organization,
                "grade": _GRADE_LABELS[ledger.role],
                "user_name": user_name or "(미입력)",
                "rule_version": ledger.rule_version,
            },
        )
        next_row = self._map_rows(worksheet, ledger.rows)
        self._map_summary(worksheet, ledger, next_row)
        return workbook

    def generate_export(
        self,
        ledger: Ledger,
        output_path: Path | str,
        user_name: str = "",
        organization: str = "식품안전정보원",
    ) -> Path:
        """Render the ledger and save the workbook to output_path."""
        workbook = self.render(ledger, user_name, organization)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)
        log_event(logger, "excel.export.saved", path=str(output_path), rows=len(ledger.rows))
        return output_path

    def to_bytes(self, ledger: Ledger, user_name: str = "", organization: str = "식품안전정보원") -> bytes:
        buffer = BytesIO()
        self.render(ledger, user_name, organization).save(buffer)
        return buffer.getvalue()

    def _map_meta(self, sheet: Worksheet, values: dict[str, Any]) -> None:
        for cell, label in self.mapping.get("meta_labels", {}).items():
            sheet[cell] = label
        for field, cell in self.mapping["meta"].items():
            sheet[cell] = values.get(field)

    def _map_rows(self, sheet: Worksheet, rows: list[LedgerRow]) -> int:
        section = self.mapping["rows"]
        header_row = int(section["header_row"])
        start_row = int(section["start_row"])
        columns = section["columns"]

        for entry in columns.values():
            sheet[f"{entry['column']}{header_row}"] = entry["label"]
            sheet[f"{entry['column']}{header_row}"].font = Font(bold=True)

        for offset, row in enumerate(rows):
            values = row.to_dict()
            values["advisories"] = ", ".join(row.advisories)
            for key, entry in columns.items():
                sheet[f"{entry['column']}{start_row + offset}"] = values.get(key)

        return start_row + len(rows)

    def _map_summary(self, sheet: Worksheet, ledger: Ledger, row: int) -> None:
        section = self.mapping["summary"]
        columns = self.mapping["rows"]["columns"]
        label_column = section["label_column"]
        value_column = section["value_column"]
        totals = ledger.totals

        sheet[f"{label_column}{row}"] = section["totals_label"]
        sheet[f"{label_column}{row}"].font = Font(bold=True)
        for key in ("daily", "meal", "fare", "lodging", "fixed", "total"):
            if key in columns:
                sheet[f"{columns[key]['column']}{row}"] = getattr(totals, key)

        summary_rows = (
            (section["total_in_words_label"], ledger.total_in_words),
            (section["personal_label"], totals.personal),
            (section["corp_card_label"], totals.corp_card),
        )
        for offset, (label, value) in enumerate(summary_rows, start=1):
            sheet[f"{label_column}{row + offset}"] = label
            sheet[f"{value_column}{row + offset}"] = value

        if not ledger.attachments:
            return
        row += len(summary_rows) + 2
        sheet[f"{label_column}{row}"] = section["attachments_label"]
        sheet[f"{label_column}{row}"].font = Font(bold=True)
        for number, entry in enumerate(ledger.attachments, start=1):
            sheet[f"A{row + number}"] = number
            sheet[f"B{row + number}"] = f"#{entry.trip_index}"
            sheet[f"C{row + number}"] = entry.file_name
            sheet[f"D{row + number}"] = entry.category

    def get_mandatory_cells(self) -> list[str]:
        verification = self.mapping.get("verification", {})
        mandatory_cells = verification.get("mandatory_cells", [])
        if not isinstance(mandatory_cells, list):
            msg = "verification.mandatory_cells must be a list of cell references"
            raise ValueError(msg)
        return mandatory_cells


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Utility for validation/testing: read exact cell values from an exported workbook."""
    workbook: Workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
