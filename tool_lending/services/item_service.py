from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import Item, Loan
from services.loan_service import LoanConflictError


QR_PAYLOAD_TYPE = "tool"

_FIELD_MAP = {
    "name": "Name",
    "description": "Description",
    "category": "Category",
}


def build_qr_payload(item_id: str, generated_at: datetime | None = None) -> str:
    moment = generated_at or datetime.now()
    return json.dumps(
        {"itemId": item_id, "type": QR_PAYLOAD_TYPE, "timestamp": moment.isoformat()},
        ensure_ascii=True,
        separators=(",", ":"),
    )


def parse_qr_payload(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _clean(value) -> str:
    return str(value or "").strip()


def apply_item_fields(item: Item, values: dict) -> None:
    for field, value in values.items():
        column = _FIELD_MAP.get(field)
        if column is None:
            continue
        setattr(item, column, _clean(value))
    if not item.Name:
        raise ValueError("Item name is required.")


def create_item(db: Session, values: dict, *, now: datetime | None = None) -> Item:
    moment = now or datetime.now()
    item = Item(IsAvailable=True, CreatedDate=moment, UpdatedDate=moment)
    apply_item_fields(item, values)
    db.add(item)
    db.flush()
    item.QrPayload = build_qr_payload(item.ItemID, moment)
    return item


def update_item(item: Item, values: dict, *, now: datetime | None = None) -> Item:
    # Availability is owned by the loan workflows and never edited here.
    apply_item_fields(item, values)
    item.UpdatedDate = now or datetime.now()
    return item


def ensure_item_deletable(db: Session, item: Item) -> None:
    active = db.execute(
        select(func.count(Loan.LoanID)).where(Loan.ItemID == item.ItemID)
    ).scalar()
    if active:
        raise LoanConflictError("Item is on loan and cannot be deleted.")


def list_categories(db: Session) -> list[str]:
    rows = db.execute(
        select(Item.Category).where(Item.Category.is_not(None)).distinct().order_by(Item.Category)
    ).scalars().all()
    return [row for row in rows if row]


def serialize_item(item: Item) -> dict:
    return {
        "itemID": item.ItemID,
        "name": item.Name,
        "description": item.Description,
        "category": item.Category,
        "isAvailable": bool(item.IsAvailable),
        "qrPayload": item.QrPayload,
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
