from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overdueNotifications: Optional[bool] = None
    emailNotifications: Optional[bool] = None
    smsNotifications: Optional[bool] = None
    autoBackup: Optional[bool] = None
    backupFrequency: Optional[Literal["daily", "weekly", "monthly"]] = None
    maintenanceMode: Optional[bool] = None
    maxLoansPerBorrower: Optional[int] = None
    requireApproval: Optional[bool] = None
