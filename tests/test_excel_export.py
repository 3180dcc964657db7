from io import BytesIO

import pytest
from openpyxl import load_workbook

from backend.services.excel_export import ExcelExportService, read_cells
from yeobi.core import Attachment, Leg, Trip
from yeobi.ledger import build_ledger


@pytest.fixture
def ledger():
    trip = Trip(
        date="2025-03-05",
        destination="세종",
        destination_metro="세종",
        legs=[
            Leg(from_="서울", to="세종", transport="rail", amount=23700, train_no="KTX 301"),
            Leg(from_="세종", to="서울", transport="personal_car", km=100, toll_fee=2000),
        ],
        attachments=[Attachment(file_name="ktx.jpg", category="철도영수증", type="rail_receipt")],
    )
    return build_ledger([trip], "staff")


def test_export_fills_mandatory_cells(tmp_path, ledger):
    service = ExcelExportService()
    output = service.generate_export(ledger, tmp_path / "out" / "settlement.xlsx", user_name="홍길동")

    values = read_cells(output, service.get_mandatory_cells(), service.sheet_name)

    assert all(value not in (None, "") for value in values.values())
    assert values["B2"] == "식품안전정보원"
    assert values["D2"] == "직원"
    assert values["H2"] == "KR_DOMESTIC_TRAVEL_2025_01"


def test_export_writes_rows_and_totals(tmp_path, ledger):
    service = ExcelExportService()
    output = service.generate_export(ledger, tmp_path / "settlement.xlsx")

    cells = read_cells(output, ["A5", "C5", "G5", "G6", "A7", "J7", "C8", "C9", "C10"], service.sheet_name)

    assert cells["A5"] == "2025-03-05"
    assert cells["C5"] == "서울→세종"
    assert cells["G5"] == 23700
    assert cells["G6"] == 170000
    assert cells["A7"] == "합 계"
    assert cells["J7"] == ledger.totals.total
    assert cells["C8"] == ledger.total_in_words
    assert cells["C9"] == ledger.totals.personal
    assert cells["C10"] == ledger.totals.corp_card


def test_to_bytes_round_trips_through_openpyxl(ledger):
    content = ExcelExportService().to_bytes(ledger, user_name="홍길동")

    workbook = load_workbook(BytesIO(content))

    assert workbook.sheetnames == ["여비정산"]
    assert workbook["여비정산"]["F2"].value == "홍길동"


def test_mapping_must_be_a_dictionary(tmp_path):
    mapping = tmp_path / "mapping.yaml"
    mapping.write_text("- not\n- a mapping\n", encoding="utf-8")

    with pytest.raises(ValueError):
        ExcelExportService(mapping_path=mapping)
