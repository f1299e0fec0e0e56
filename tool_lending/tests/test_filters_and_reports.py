import os
import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path


os.environ.setdefault("TOOL_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LOCAL_ADMIN_PASSWORD", "admin-test-pin")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import SessionLocalLending, engine_lending
from services.borrower_service import create_borrower
from services.item_service import create_item
from services.listing_service import filter_borrowers, filter_items, filter_loans, filter_overdue, paginate
from services.loan_service import issue_loan, return_loan
from services.report_service import (
    build_report,
    monthly_growth,
    render_report_text,
    report_filename,
)


LOANS = [
    {"loanID": "1", "status": "active", "severity": None, "ticketCode": "TL250101001",
     "item": {"name": "Phillips screwdriver"}, "borrower": {"name": "J. Perez"}},
    {"loanID": "2", "status": "overdue", "severity": "mild", "ticketCode": "TL250101002",
     "item": {"name": "Flat screwdriver"}, "borrower": {"name": "Ana Ruiz"}},
    {"loanID": "3", "status": "overdue", "severity": "severe", "ticketCode": "TL250101003",
     "item": {"name": "Soldering iron"}, "borrower": {"name": "J. Perez"}},
]


class FilterTests(unittest.TestCase):
    def test_all_and_empty_filters_are_no_ops(self):
        self.assertEqual(filter_loans(LOANS, None, "all"), LOANS)
        self.assertEqual(filter_loans(LOANS, "", ""), LOANS)
        self.assertEqual(filter_loans(LOANS, "  ", "ALL"), LOANS)

    def test_search_and_status_intersect(self):
        perez = filter_loans(LOANS, "perez", None)
        self.assertEqual([row["loanID"] for row in perez], ["1", "3"])
        overdue_perez = filter_loans(LOANS, "perez", "overdue")
        self.assertEqual([row["loanID"] for row in overdue_perez], ["3"])

    def test_search_term_all_is_a_real_search(self):
        items = [
            {"name": "Ball peen hammer", "description": "", "category": "Hand tools"},
            {"name": "Drill", "description": "", "category": "Power tools"},
        ]
        self.assertEqual(filter_items(items, "all", "all"), [items[0]])
        borrowers = [
            {"name": "Allan Soto", "studentNumber": "1", "career": ""},
            {"name": "Ana Ruiz", "studentNumber": "2", "career": ""},
        ]
        self.assertEqual(filter_borrowers(borrowers, "ALL"), [borrowers[0]])

    def test_search_matches_ticket_and_nested_names(self):
        self.assertEqual([row["loanID"] for row in filter_loans(LOANS, "SCREWDRIVER")], ["1", "2"])
        self.assertEqual([row["loanID"] for row in filter_loans(LOANS, "tl250101002")], ["2"])

    def test_overdue_view_filters_severity(self):
        self.assertEqual([row["loanID"] for row in filter_overdue(LOANS)], ["2", "3"])
        self.assertEqual([row["loanID"] for row in filter_overdue(LOANS, severity="severe")], ["3"])

    def test_item_category_filter(self):
        items = [
            {"name": "Hammer", "description": "", "category": "Hand tools"},
            {"name": "Drill", "description": "cordless", "category": "Power tools"},
        ]
        self.assertEqual(filter_items(items, None, "Power tools"), [items[1]])
        self.assertEqual(filter_items(items, "cordless", "Hand tools"), [])

    def test_paginate(self):
        self.assertEqual(paginate(LOANS, 2, 0), LOANS[:2])
        self.assertEqual(paginate(LOANS, None, 1), LOANS[1:])
        self.assertEqual(paginate(LOANS, 5, 10), [])


class ReportTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.create_all(engine_lending)
        with engine_lending.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())
        self.db = SessionLocalLending()
        self.now = datetime(2025, 6, 20, 12, 0)

    def tearDown(self):
        self.db.close()

    def test_monthly_growth(self):
        self.assertEqual(monthly_growth(5, 0), 0.0)
        self.assertEqual(monthly_growth(15, 10), 50.0)
        self.assertEqual(monthly_growth(2, 3), -33.3)

    def test_rejects_unknown_range(self):
        with self.assertRaises(ValueError):
            build_report(self.db, 10, self.now)

    def test_report_counts_and_text(self):
        drill = create_item(self.db, {"name": "Drill"})
        saw = create_item(self.db, {"name": "Saw"})
        ana = create_borrower(self.db, {"name": "Ana", "studentNumber": "1", "career": "Civil Engineering"})
        ben = create_borrower(self.db, {"name": "Ben", "studentNumber": "2"})
        self.db.commit()

        first = issue_loan(self.db, item_id=drill.ItemID, borrower_id=ana.BorrowerID, operator_id="op", now=self.now - timedelta(days=3))
        return_loan(self.db, loan_id=first.LoanID, operator_id="op", now=self.now - timedelta(days=1))
        issue_loan(self.db, item_id=drill.ItemID, borrower_id=ben.BorrowerID, operator_id="op", now=self.now - timedelta(days=1))
        issue_loan(self.db, item_id=saw.ItemID, borrower_id=ana.BorrowerID, operator_id="op", now=self.now - timedelta(days=25))

        report = build_report(self.db, 30, self.now)
        self.assertEqual(report["totalLoans"], 3)
        self.assertEqual(report["returnedLoans"], 1)
        self.assertEqual(report["activeLoans"], 1)
        self.assertEqual(report["overdueLoans"], 1)
        self.assertEqual(report["mostUsedItems"][0], {"itemID": drill.ItemID, "name": "Drill", "count": 2})
        careers = {row["career"]: row["count"] for row in report["loansByCareer"]}
        self.assertEqual(careers, {"Civil Engineering": 2, "Unspecified": 1})
        self.assertEqual(len(report["dailyLoans"]), 7)
        self.assertEqual(report["monthlyStats"]["currentMonth"], 2)
        self.assertEqual(report["monthlyStats"]["previousMonth"], 1)
        self.assertEqual(report["monthlyStats"]["growth"], 100.0)

        week = build_report(self.db, 7, self.now)
        self.assertEqual(week["totalLoans"], 2)

        text = render_report_text(report)
        self.assertTrue(text.startswith("TOOL LOAN REPORT\n"))
        self.assertIn("- Drill: 2 loans", text)
        self.assertIn("- Growth: 100.0%", text)
        self.assertEqual(report_filename(self.now), "loan-report-2025-06-20.txt")


if __name__ == "__main__":
    unittest.main()
