from typing import Optional

from pydantic import BaseModel, ConfigDict


class BorrowerUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    borrowerID: Optional[str] = None
    name: Optional[str] = None
    studentNumber: Optional[str] = None
    career: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
