from __future__ import annotations

from pathlib import Path

from backend.services.excel_export import ExcelExportService, read_cells
from yeobi.core import Attachment, Leg, Trip
from yeobi.ledger import build_ledger


def sample_trips() -> list[Trip]:
    """Two-leg Sejong trip plus one short domestic trip."""
    sejong = Trip(
        date="2025-03-05",
        destination="세종",
        destination_metro="세종",
        legs=[
            Leg(from_="서울", to="세종", transport="rail", amount=23700, train_no="KTX 301"),
            Leg(from_="세종", to="서울", transport="personal_car", km=120, toll_fee=4800),
        ],
        lunch=True,
        no_lodging=False,
        lodging_region="기타",
        lodging_amount=85000,
        attachments=[
            Attachment(file_name="ktx_0305.jpg", category="철도영수증", type="rail_receipt"),
            Attachment(
                file_name="hotel_0305.pdf",
                category="숙박영수증",
                type="lodging_receipt",
                proof_metro="세종",
                is_proof=True,
            ),
        ],
    )
    short = Trip(date="2025-03-07", trip_type="domestic_short", destination="양재")
    return [sejong, short]


def main() -> int:
    service = ExcelExportService()
    ledger = build_ledger(sample_trips(), role="staff")

    output_path = Path("artifacts/sample_settlement_export.xlsx")
    service.generate_export(ledger, output_path, user_name="홍길동")

    mandatory_cells = service.get_mandatory_cells()
    values = read_cells(output_path, mandatory_cells, service.sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing mandatory values in:", ", ".join(missing))
        return 1

    print(f"Verification passed. Export generated at {output_path} (total {ledger.totals.total:,}원)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
