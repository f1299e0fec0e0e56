from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.lending_models import Borrower, Item, Loan, LoanHistory, OperatorAccount
from services.audit_service import log_audit
from services.loan_status_service import (
    STATUS_ACTIVE,
    STATUS_RETURNED,
    due_date_for,
    resolve_loan_status,
)


LOGGER = logging.getLogger("tool_lending.loans")

TICKET_PREFIX = "TL"


class RecordNotFoundError(LookupError):
    pass


class LoanConflictError(RuntimeError):
    pass


def generate_ticket_code(now: datetime | None = None, prefix: str = TICKET_PREFIX) -> str:
    # Not checked against existing codes; two loans on one day may collide.
    current = now or datetime.now()
    suffix = secrets.randbelow(1000)
    return f"{prefix}{current:%y%m%d}{suffix:03d}"


def issue_loan(
    db: Session,
    *,
    item_id: str,
    borrower_id: str,
    operator_id: str | None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Loan:
    loan_date = now or datetime.now()

    borrower = db.get(Borrower, borrower_id)
    if not borrower:
        raise RecordNotFoundError("Borrower not found.")
    item = db.get(Item, item_id)
    if not item:
        raise RecordNotFoundError("Item not found.")

    try:
        # Check-and-set on availability; a concurrent issuance loses here.
        claimed = db.execute(
            update(Item)
            .where(Item.ItemID == item_id)
            .where(Item.IsAvailable.is_(True))
            .values(IsAvailable=False, UpdatedDate=loan_date)
        )
        if (claimed.rowcount or 0) != 1:
            db.rollback()
            LOGGER.info("Issuance rejected item_id=%s reason=item_not_available", item_id)
            raise LoanConflictError("Item is not available for loan.")

        loan = Loan(
            ItemID=item_id,
            BorrowerID=borrower_id,
            LoanDate=loan_date,
            DueDate=due_date_for(loan_date),
            Status=STATUS_ACTIVE,
            IssuedBy=operator_id,
            Notes=(notes or "").strip(),
            TicketCode=generate_ticket_code(loan_date),
            CreatedDate=loan_date,
        )
        db.add(loan)
        db.flush()
        log_audit(db, "Loan", loan.LoanID, "Issue", f"ticket={loan.TicketCode} item={item_id} borrower={borrower_id}", user_id=operator_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Issuance failed item_id=%s borrower_id=%s", item_id, borrower_id)
        raise

    LOGGER.info("Loan issued loan_id=%s ticket=%s item_id=%s operator=%s", loan.LoanID, loan.TicketCode, item_id, operator_id)
    return loan


def return_loan(
    db: Session,
    *,
    loan_id: str,
    operator_id: str | None,
    return_notes: str | None = None,
    now: datetime | None = None,
) -> LoanHistory:
    return_date = now or datetime.now()

    loan = db.get(Loan, loan_id)
    archived = db.get(LoanHistory, loan_id)
    if loan is None:
        if archived is not None:
            # Retried return: the first attempt already committed.
            return archived
        raise RecordNotFoundError("Loan not found.")

    try:
        if archived is None:
            archived = LoanHistory(
                LoanID=loan.LoanID,
                ItemID=loan.ItemID,
                BorrowerID=loan.BorrowerID,
                LoanDate=loan.LoanDate,
                DueDate=loan.DueDate,
                ReturnDate=return_date,
                Status=STATUS_RETURNED,
                IssuedBy=loan.IssuedBy,
                ReturnedBy=operator_id,
                Notes=loan.Notes,
                ReturnNotes=(return_notes or "").strip(),
                TicketCode=loan.TicketCode,
                CreatedDate=loan.CreatedDate,
                UpdatedDate=return_date,
            )
            db.add(archived)
        item_id = loan.ItemID
        db.delete(loan)
        released = db.execute(
            update(Item)
            .where(Item.ItemID == item_id)
            .values(IsAvailable=True, UpdatedDate=return_date)
        )
        if (released.rowcount or 0) == 0:
            LOGGER.warning("Returned loan references missing item loan_id=%s item_id=%s", loan_id, item_id)
        log_audit(db, "Loan", loan_id, "Return", f"ticket={archived.TicketCode} item={item_id}", user_id=operator_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        LOGGER.exception("Return failed loan_id=%s", loan_id)
        raise

    LOGGER.info("Loan returned loan_id=%s item_id=%s operator=%s", loan_id, item_id, operator_id)
    return archived


def load_active_loans(db: Session, *, oldest_first: bool = False) -> list[Loan]:
    order = Loan.LoanDate.asc() if oldest_first else Loan.LoanDate.desc()
    stmt = (
        select(Loan)
        .options(selectinload(Loan.Item), selectinload(Loan.Borrower))
        .where(Loan.Status == STATUS_ACTIVE)
        .order_by(order)
    )
    return list(db.execute(stmt).scalars().all())


def load_loan_history(db: Session) -> list[LoanHistory]:
    stmt = select(LoanHistory).order_by(LoanHistory.ReturnDate.desc())
    return list(db.execute(stmt).scalars().all())


def batch_lookup(db: Session, model, key_column, ids) -> dict:
    wanted = {value for value in ids if value}
    if not wanted:
        return {}
    rows = db.execute(select(model).where(key_column.in_(wanted))).scalars().all()
    return {getattr(row, key_column.key): row for row in rows}


def operator_names(db: Session, operator_ids, fallback: dict | None = None) -> dict[str, str]:
    names = {
        operator_id: account.Name
        for operator_id, account in batch_lookup(db, OperatorAccount, OperatorAccount.OperatorID, operator_ids).items()
    }
    for operator_id, name in (fallback or {}).items():
        names.setdefault(operator_id, name)
    return names


def _item_summary(item: Item | None) -> dict | None:
    if not item:
        return None
    return {
        "itemID": item.ItemID,
        "name": item.Name,
        "category": item.Category,
    }


def _borrower_summary(borrower: Borrower | None) -> dict | None:
    if not borrower:
        return None
    return {
        "borrowerID": borrower.BorrowerID,
        "name": borrower.Name,
        "studentNumber": borrower.StudentNumber,
        "career": borrower.Career,
    }


def serialize_loan(loan: Loan, now: datetime | None = None, operators: dict[str, str] | None = None) -> dict:
    payload = {
        "loanID": loan.LoanID,
        "ticketCode": loan.TicketCode,
        "itemID": loan.ItemID,
        "borrowerID": loan.BorrowerID,
        "loanDate": loan.LoanDate,
        "dueDate": loan.DueDate,
        "issuedBy": loan.IssuedBy,
        "issuedByName": (operators or {}).get(loan.IssuedBy or ""),
        "notes": loan.Notes,
        "createdDate": loan.CreatedDate,
        "item": _item_summary(loan.Item),
        "borrower": _borrower_summary(loan.Borrower),
    }
    payload.update(resolve_loan_status(loan, now))
    return payload


def serialize_history(
    record: LoanHistory,
    items: dict | None = None,
    borrowers: dict | None = None,
    operators: dict[str, str] | None = None,
) -> dict:
    names = operators or {}
    return {
        "loanID": record.LoanID,
        "ticketCode": record.TicketCode,
        "itemID": record.ItemID,
        "borrowerID": record.BorrowerID,
        "loanDate": record.LoanDate,
        "dueDate": record.DueDate,
        "returnDate": record.ReturnDate,
        "status": record.Status,
        "issuedBy": record.IssuedBy,
        "issuedByName": names.get(record.IssuedBy or ""),
        "returnedBy": record.ReturnedBy,
        "returnedByName": names.get(record.ReturnedBy or ""),
        "notes": record.Notes,
        "returnNotes": record.ReturnNotes,
        "item": _item_summary((items or {}).get(record.ItemID)),
        "borrower": _borrower_summary((borrowers or {}).get(record.BorrowerID)),
    }


def serialize_history_rows(db: Session, records: list[LoanHistory], fallback_operators: dict | None = None) -> list[dict]:
    items = batch_lookup(db, Item, Item.ItemID, [record.ItemID for record in records])
    borrowers = batch_lookup(db, Borrower, Borrower.BorrowerID, [record.BorrowerID for record in records])
    operator_ids = [record.IssuedBy for record in records] + [record.ReturnedBy for record in records]
    operators = operator_names(db, operator_ids, fallback_operators)
    return [serialize_history(record, items, borrowers, operators) for record in records]


def serialize_loan_rows(db: Session, loans: list[Loan], now: datetime | None = None, fallback_operators: dict | None = None) -> list[dict]:
    operators = operator_names(db, [loan.IssuedBy for loan in loans], fallback_operators)
    return [serialize_loan(loan, now, operators) for loan in loans]
