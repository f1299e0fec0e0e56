from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import Borrower, Item, Loan, LoanHistory
from services.loan_service import batch_lookup, load_active_loans, serialize_loan_rows
from services.loan_status_service import STATUS_OVERDUE, STATUS_RETURNED, derive_status


REPORT_RANGES = (7, 30, 90, 365)
TOP_ITEMS_LIMIT = 5
DAILY_WINDOW_DAYS = 7
RECENT_ACTIVITY_LIMIT = 5


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_month_start(moment: datetime) -> datetime:
    start = _month_start(moment)
    return _month_start(start + timedelta(days=32))


def _loan_rows(db: Session, now: datetime) -> list[dict]:
    rows = []
    for loan in db.execute(select(Loan)).scalars().all():
        rows.append(
            {
                "itemID": loan.ItemID,
                "borrowerID": loan.BorrowerID,
                "loanDate": loan.LoanDate,
                "status": derive_status(loan.LoanDate, now),
            }
        )
    for record in db.execute(select(LoanHistory)).scalars().all():
        rows.append(
            {
                "itemID": record.ItemID,
                "borrowerID": record.BorrowerID,
                "loanDate": record.LoanDate,
                "status": STATUS_RETURNED,
            }
        )
    return rows


def monthly_growth(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return round(((current - previous) / previous) * 100, 1)


def build_report(db: Session, days: int, now: datetime | None = None) -> dict:
    if days not in REPORT_RANGES:
        raise ValueError(f"days must be one of {', '.join(str(value) for value in REPORT_RANGES)}.")
    current = now or datetime.now()
    rows = _loan_rows(db, current)
    range_start = current - timedelta(days=days)
    in_range = [row for row in rows if row["loanDate"] and row["loanDate"] >= range_start]

    statuses = Counter(row["status"] for row in in_range)
    items = batch_lookup(db, Item, Item.ItemID, [row["itemID"] for row in in_range])
    borrowers = batch_lookup(db, Borrower, Borrower.BorrowerID, [row["borrowerID"] for row in in_range])

    item_counts = Counter(row["itemID"] for row in in_range)
    most_used = []
    for item_id, count in item_counts.most_common(TOP_ITEMS_LIMIT):
        item = items.get(item_id)
        most_used.append({"itemID": item_id, "name": item.Name if item else "(deleted item)", "count": count})

    career_counts = Counter()
    for row in in_range:
        borrower = borrowers.get(row["borrowerID"])
        career_counts[(borrower.Career if borrower else None) or "Unspecified"] += 1
    by_career = [{"career": career, "count": count} for career, count in career_counts.most_common()]

    today = current.replace(hour=0, minute=0, second=0, microsecond=0)
    daily = []
    for offset in range(DAILY_WINDOW_DAYS - 1, -1, -1):
        day_start = today - timedelta(days=offset)
        day_end = day_start + timedelta(days=1)
        count = sum(1 for row in rows if row["loanDate"] and day_start <= row["loanDate"] < day_end)
        daily.append({"date": day_start.strftime("%d/%m"), "count": count})

    month_start = _month_start(current)
    month_end = _next_month_start(current)
    previous_start = _month_start(month_start - timedelta(days=1))
    current_month = sum(1 for row in rows if row["loanDate"] and month_start <= row["loanDate"] < month_end)
    previous_month = sum(1 for row in rows if row["loanDate"] and previous_start <= row["loanDate"] < month_start)

    return {
        "rangeDays": days,
        "generatedAt": current,
        "totalLoans": len(in_range),
        "activeLoans": statuses.get("active", 0),
        "returnedLoans": statuses.get(STATUS_RETURNED, 0),
        "overdueLoans": statuses.get(STATUS_OVERDUE, 0),
        "mostUsedItems": most_used,
        "loansByCareer": by_career,
        "dailyLoans": daily,
        "monthlyStats": {
            "currentMonth": current_month,
            "previousMonth": previous_month,
            "growth": monthly_growth(current_month, previous_month),
        },
    }


def render_report_text(report: dict) -> str:
    generated_at: datetime = report["generatedAt"]
    monthly = report["monthlyStats"]
    lines = [
        "TOOL LOAN REPORT",
        f"Generated: {generated_at:%Y-%m-%d %H:%M}",
        f"Period: last {report['rangeDays']} days",
        "",
        "SUMMARY:",
        f"- Total loans: {report['totalLoans']}",
        f"- Active loans: {report['activeLoans']}",
        f"- Returned loans: {report['returnedLoans']}",
        f"- Overdue loans: {report['overdueLoans']}",
        "",
        "MOST USED TOOLS:",
    ]
    lines.extend(f"- {entry['name']}: {entry['count']} loans" for entry in report["mostUsedItems"])
    lines.append("")
    lines.append("LOANS BY PROGRAM:")
    lines.extend(f"- {entry['career']}: {entry['count']} loans" for entry in report["loansByCareer"])
    lines.extend(
        [
            "",
            "MONTHLY STATISTICS:",
            f"- Current month: {monthly['currentMonth']} loans",
            f"- Previous month: {monthly['previousMonth']} loans",
            f"- Growth: {monthly['growth']:.1f}%",
        ]
    )
    return "\n".join(lines) + "\n"


def report_filename(now: datetime | None = None) -> str:
    return f"loan-report-{(now or datetime.now()):%Y-%m-%d}.txt"


def build_dashboard(db: Session, now: datetime | None = None, fallback_operators: dict | None = None) -> dict:
    current = now or datetime.now()
    total_items = db.execute(select(func.count(Item.ItemID))).scalar() or 0
    available_items = db.execute(
        select(func.count(Item.ItemID)).where(Item.IsAvailable.is_(True))
    ).scalar() or 0
    total_borrowers = db.execute(select(func.count(Borrower.BorrowerID))).scalar() or 0

    active = load_active_loans(db)
    serialized = serialize_loan_rows(db, active, current, fallback_operators)
    overdue = [loan for loan in serialized if loan["status"] == STATUS_OVERDUE]
    return {
        "totalItems": total_items,
        "availableItems": available_items,
        "totalBorrowers": total_borrowers,
        "activeLoans": len(serialized),
        "overdueLoans": len(overdue),
        "recentActivity": serialized[:RECENT_ACTIVITY_LIMIT],
    }
