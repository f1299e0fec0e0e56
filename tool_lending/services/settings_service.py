from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from models.lending_models import SystemSetting
from services.loan_status_service import LOAN_GRACE_DAYS


SETTINGS_KEY = "system"

DEFAULT_SETTINGS: dict[str, Any] = {
    "overdueNotifications": True,
    "emailNotifications": True,
    "smsNotifications": False,
    "autoBackup": True,
    "backupFrequency": "daily",
    "maintenanceMode": False,
    "maxLoansPerBorrower": 3,
    "requireApproval": False,
}


def _from_json_dict(value: Any) -> dict[str, Any]:
    if value in (None, ""):
        return {}
    try:
        parsed = json.loads(str(value))
    except (TypeError, ValueError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _normalize_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    baseline = dict(DEFAULT_SETTINGS)
    if not isinstance(raw, dict):
        return baseline
    for key, default in DEFAULT_SETTINGS.items():
        if key not in raw or raw[key] is None:
            continue
        value = raw[key]
        if isinstance(default, bool):
            baseline[key] = bool(value)
        elif isinstance(default, int):
            baseline[key] = int(value)
        else:
            baseline[key] = str(value)
    return baseline


def get_settings(db: Session) -> dict[str, Any]:
    row = db.get(SystemSetting, SETTINGS_KEY)
    settings = _normalize_settings(_from_json_dict(row.SettingValue if row else None))
    # Grace period is deployment configuration, shown read-only.
    settings["loanDurationDays"] = LOAN_GRACE_DAYS
    settings["updatedDate"] = row.UpdatedDate if row else None
    settings["updatedBy"] = row.UpdatedBy if row else None
    return settings


def update_settings(db: Session, changes: dict[str, Any], *, actor_id: str | None) -> dict[str, Any]:
    if "maxLoansPerBorrower" in changes and changes["maxLoansPerBorrower"] is not None:
        if int(changes["maxLoansPerBorrower"]) < 1:
            raise ValueError("maxLoansPerBorrower must be at least 1.")
    row = db.get(SystemSetting, SETTINGS_KEY)
    current = _normalize_settings(_from_json_dict(row.SettingValue if row else None))
    merged = _normalize_settings({**current, **changes})
    if row is None:
        row = SystemSetting(SettingKey=SETTINGS_KEY)
        db.add(row)
    row.SettingValue = json.dumps(merged, ensure_ascii=True)
    row.UpdatedDate = datetime.now()
    row.UpdatedBy = actor_id
    db.flush()
    return get_settings(db)
