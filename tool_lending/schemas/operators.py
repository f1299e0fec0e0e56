from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    password: str | None = None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    name: str
    password: str


class CreateOperatorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    name: str
    password: str
    role: Literal["Operator", "SuperOperator"] = "Operator"


class UpdateOperatorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    role: Optional[Literal["Operator", "SuperOperator"]] = None
