from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime
from zoneinfo import ZoneInfo
import math
import re

from config import get_settings

FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESERVED_FIELDS = {"_id", "name"}

Number = Union[int, float]


def local_now() -> datetime:
    """Current time in the configured timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone))


class Account(BaseModel):
    """Account document as exposed by the API; balance fields are kept as extras."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1, max_length=100, description="Unique account name")

    @model_validator(mode="after")
    def validate_balances(self):
        for field, value in (self.model_extra or {}).items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValueError(f"Balance field '{field}' must be a finite number")
        return self

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Account":
        return cls(**{k: v for k, v in document.items() if k != "_id"})

    def balances(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class TransferResult(BaseModel):
    """Post-update snapshots of both accounts, as returned by the store."""

    source: Account
    destination: Account


class TransferRequest(BaseModel):
    source: str = Field(..., min_length=1, max_length=100, description="Account to debit")
    destination: str = Field(..., min_length=1, max_length=100, description="Account to credit")
    amount: Number = Field(..., description="Amount to move, strictly positive")
    field: str = Field(
        default_factory=lambda: get_settings().default_balance_field,
        min_length=1,
        max_length=64,
        description="Balance field to adjust",
    )

    @field_validator("amount")
    @classmethod
    def validate_amount_limits(cls, v):
        settings = get_settings()
        if not math.isfinite(v):
            raise ValueError("Amount must be a finite number")
        if v <= 0:
            raise ValueError("Amount must be positive")
        if v < settings.min_transfer_amount:
            raise ValueError(f"Amount must be at least {settings.min_transfer_amount}")
        if v > settings.max_transfer_amount:
            raise ValueError(f"Amount cannot exceed {settings.max_transfer_amount}")
        return v

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        if not FIELD_NAME_PATTERN.match(v) or v in RESERVED_FIELDS:
            raise ValueError("Field must be a plain balance field name")
        return v

    @model_validator(mode="after")
    def validate_distinct_accounts(self):
        if self.source == self.destination:
            raise ValueError("Source and destination must be different accounts")
        return self


class TransferResponse(BaseModel):
    transferId: str = Field(..., description="Unique transfer identifier")
    status: Literal["committed"] = Field(..., description="Transfer status")
    field: str = Field(..., description="Balance field that was adjusted")
    amount: Number = Field(..., description="Amount moved")
    source: Account = Field(..., description="Source account after the debit")
    destination: Account = Field(..., description="Destination account after the credit")
    timestamp: datetime = Field(..., description="Commit timestamp")


class AccountsCreateRequest(BaseModel):
    accounts: List[Account] = Field(..., min_length=1, description="Accounts to insert")

    @field_validator("accounts")
    @classmethod
    def validate_unique_names(cls, v):
        names = [account.name for account in v]
        if len(names) != len(set(names)):
            raise ValueError("Account names must be unique")
        return v


class AccountsCreateResponse(BaseModel):
    inserted: int = Field(..., description="Number of accounts inserted")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    balance: Optional[Number] = Field(default=None, description="Balance before the rejected debit")
    timestamp: datetime = Field(default_factory=local_now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=local_now)
    store_backend: str = Field(..., description="Store backend in use")
    accounts_count: int = Field(..., description="Number of accounts in the store")
