from typing import Optional

from pydantic import BaseModel, ConfigDict


class IssueLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: str
    borrowerID: str
    notes: Optional[str] = None


class ReturnLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
