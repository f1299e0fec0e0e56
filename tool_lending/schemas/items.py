from typing import Optional

from pydantic import BaseModel, ConfigDict


class ItemUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
