from __future__ import annotations

from html import escape

from .ledger import Ledger, LedgerRow

_HEADERS = ("일자", "구분", "경로", "교통편", "일비", "식비", "운임", "숙박비", "합계", "비고")


def _money(value: int) -> str:
    return f"{value:,}" if value else "—"


def _date_label(value: str) -> str:
    # 2025-03-05 -> 03/05
    return value[5:].replace("-", "/") if value else ""


def _row_html(row: LedgerRow) -> str:
    flat = bool(row.fixed)
    cells = [
        _date_label(row.date),
        row.trip_type,
        row.route,
        row.transport,
        "—" if flat else f"{row.daily:,}",
        "—" if flat else f"{row.meal:,}",
        f"{row.fixed:,}" if flat else f"{row.fare:,}",
        "—" if flat else _money(row.lodging),
        f"{row.total:,}",
        ", ".join(row.advisories),
    ]
    css = ' class="proof-missing"' if row.proof_missing else ""
    return f"<tr{css}>" + "".join(f"<td>{escape(cell)}</td>" for cell in cells) + "</tr>"


def render_settlement_table(ledger: Ledger, user_name: str = "", organization: str = "식품안전정보원") -> str:
    """Render the ledger as a self-contained HTML table for pasting into groupware forms."""
    grade = "임원" if ledger.role == "executive" else "직원"
    totals = ledger.totals
    header = (
        f"<tr><td colspan=\"10\">소속: {escape(organization)} | 직급: {grade} | "
        f"성명: {escape(user_name or '(미입력)')} | 예산항목: 국내여비</td></tr>"
    )
    head_row = "<tr>" + "".join(f"<th>{label}</th>" for label in _HEADERS) + "</tr>"
    body = "".join(_row_html(row) for row in ledger.rows)
    totals_row = (
        "<tr class=\"totals\"><td colspan=\"4\">합 계</td>"
        f"<td>{_money(totals.daily)}</td><td>{totals.meal:,}</td>"
        f"<td>{totals.fare + totals.fixed:,}</td><td>{_money(totals.lodging)}</td>"
        f"<td>{totals.total:,}</td><td></td></tr>"
    )
    words_row = f"<tr><td colspan=\"10\">총 여비: {escape(ledger.total_in_words)}</td></tr>"
    split_rows = (
        "<tr><th colspan=\"10\">■ 지급 구분</th></tr>"
        f"<tr><td colspan=\"6\">개인정산 (통장입금)</td><td colspan=\"4\">{totals.personal:,}원</td></tr>"
        f"<tr><td colspan=\"6\">기관결제 (법인카드)</td><td colspan=\"4\">{_money(totals.corp_card)}</td></tr>"
    )

    attachment_rows = ""
    if ledger.attachments:
        attachment_rows = "<tr><th colspan=\"10\">■ 첨부서류 목록</th></tr>" + "".join(
            f"<tr><td>{number}</td><td>#{entry.trip_index}</td>"
            f"<td colspan=\"5\">{escape(entry.file_name)}</td>"
            f"<td colspan=\"3\">{escape(entry.category)}</td></tr>"
            for number, entry in enumerate(ledger.attachments, start=1)
        )

    return (
        '<table class="settlement">'
        f"<thead>{header}{head_row}</thead>"
        f"<tbody>{body}{totals_row}{words_row}{split_rows}{attachment_rows}</tbody>"
        "</table>"
    )
