import unittest

from yeobi.core import Attachment, Leg, Trip
from yeobi.ledger import LedgerBuilder, amount_to_korean, build_ledger, total_in_words
from yeobi.ui import render_settlement_table


def rail_attachment(file_name="ktx.jpg"):
    return Attachment(file_name=file_name, category="철도영수증", type="rail_receipt", is_proof=True)


def two_leg_trip(**overrides):
    values = dict(
        date="2025-03-05",
        destination="세종",
        destination_metro="세종",
        legs=[
            Leg(from_="서울", to="세종", transport="rail", amount=23700, train_no="KTX 301"),
            Leg(from_="세종", to="서울", transport="personal_car", km=100, toll_fee=2000),
        ],
        no_lodging=False,
        lodging_region="기타",
        lodging_amount=60000,
        attachments=[rail_attachment()],
    )
    values.update(overrides)
    return Trip(**values)


class LedgerBuilderTestCase(unittest.TestCase):
    def test_two_leg_trip_yields_one_row_per_leg(self):
        ledger = build_ledger([two_leg_trip()], "staff")

        self.assertEqual(len(ledger.rows), 2)
        first, second = ledger.rows
        self.assertEqual((first.daily, first.meal, first.lodging), (25000, 25000, 60000))
        self.assertEqual((second.daily, second.meal, second.lodging), (0, 0, 0))
        self.assertEqual(first.fare, 23700)
        self.assertEqual(second.fare, 170000)
        self.assertEqual(ledger.totals.total, 23700 + 170000 + 25000 + 25000 + 60000)
        self.assertEqual(first.transport, "KTX 301")
        self.assertEqual(second.transport, "자가용(100km)")
        self.assertEqual(second.route, "세종→서울")

    def test_payment_split_follows_pay_methods(self):
        ledger = build_ledger([two_leg_trip(lodging_pay_method="personal")], "staff")

        self.assertEqual(ledger.totals.corp_card, 23700 + 170000)
        self.assertEqual(ledger.totals.personal, 25000 + 25000 + 60000)
        self.assertEqual(ledger.totals.corp_card + ledger.totals.personal, ledger.totals.total)

    def test_staff_lodging_cap_with_advisory(self):
        trip = two_leg_trip(lodging_region="서울", lodging_amount=150000)

        staff = build_ledger([trip], "staff")
        executive = build_ledger([trip], "executive")

        self.assertEqual(staff.rows[0].lodging, 100000)
        self.assertIn("숙박비 상한초과(150,000→100,000)", staff.rows[0].advisories)
        self.assertEqual(executive.rows[0].lodging, 150000)
        self.assertEqual(executive.rows[0].advisories, [])

    def test_flat_rate_trip_yields_single_fixed_row(self):
        trip = Trip(date="2025-03-07", trip_type="domestic_long", destination="양재", lunch=True)

        ledger = build_ledger([trip], "staff")

        self.assertEqual(len(ledger.rows), 1)
        row = ledger.rows[0]
        self.assertEqual(row.fixed, 20000)
        self.assertEqual(row.personal, 20000)
        self.assertEqual(row.daily + row.meal + row.fare + row.lodging, 0)
        self.assertEqual(row.route, "식품안전정보원→양재")
        self.assertFalse(row.proof_missing)

    def test_missing_proof_flags_every_row_of_the_trip(self):
        trip = two_leg_trip(
            attachments=[
                Attachment(
                    file_name="store.jpg",
                    category="현지영수증",
                    type="local_receipt",
                    proof_metro="대전",
                    is_proof=True,
                )
            ]
        )

        ledger = build_ledger([trip], "staff")

        self.assertTrue(all(row.proof_missing for row in ledger.rows))
        self.assertIn("⚠️증빙 미확인", ledger.rows[0].advisories)
        self.assertNotIn("⚠️증빙 미확인", ledger.rows[1].advisories)
        self.assertEqual(ledger.proof_missing_trips, [1])

    def test_official_car_halves_daily_allowance(self):
        trip = two_leg_trip(legs=[Leg(transport="official_car", fuel_fee=20000, toll_fee=3000)])

        row = build_ledger([trip], "staff").rows[0]

        self.assertEqual(row.daily, 12500)
        self.assertEqual(row.fare, 23000)
        self.assertIn("공용차량(일비50%)", row.advisories)

    def test_attachment_index_and_serialization(self):
        ledger = build_ledger(
            [two_leg_trip(), Trip(trip_type="domestic_short", attachments=[rail_attachment("second.jpg")])],
            "staff",
        )

        self.assertEqual([(a.trip_index, a.file_name) for a in ledger.attachments], [(1, "ktx.jpg"), (2, "second.jpg")])
        payload = ledger.to_dict()
        self.assertEqual(payload["ruleVersion"], "KR_DOMESTIC_TRAVEL_2025_01")
        self.assertEqual(payload["rows"][0]["total"], ledger.rows[0].total)
        self.assertEqual(payload["totalInWords"], ledger.total_in_words)

    def test_unknown_role_is_rejected(self):
        with self.assertRaises(ValueError):
            LedgerBuilder().build([two_leg_trip()], "intern")


class TotalInWordsTestCase(unittest.TestCase):
    def test_korean_numerals(self):
        self.assertEqual(amount_to_korean(0), "영")
        self.assertEqual(amount_to_korean(170000), "일십칠만")
        self.assertEqual(amount_to_korean(12345), "일만이천삼백사십오")
        self.assertEqual(amount_to_korean(303700), "삼십만삼천칠백")
        self.assertEqual(amount_to_korean(100000000), "일억")

    def test_total_in_words_line(self):
        self.assertEqual(total_in_words(170000), "금 170,000원정 (일십칠만원)")


class SettlementTableTestCase(unittest.TestCase):
    def test_html_table_contains_rows_totals_and_attachments(self):
        ledger = build_ledger([two_leg_trip(attachments=[])], "staff")

        html = render_settlement_table(ledger, user_name="<홍길동>")

        self.assertIn("직급: 직원", html)
        self.assertIn("&lt;홍길동&gt;", html)
        self.assertNotIn("<홍길동>", html)
        self.assertIn('class="proof-missing"', html)
        self.assertIn(ledger.total_in_words, html)
        self.assertIn(f"{ledger.totals.total:,}", html)

    def test_attachment_list_is_rendered(self):
        html = render_settlement_table(build_ledger([two_leg_trip()], "executive"))

        self.assertIn("직급: 임원", html)
        self.assertIn("첨부서류 목록", html)
        self.assertIn("ktx.jpg", html)


if __name__ == "__main__":
    unittest.main()
