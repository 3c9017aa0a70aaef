from enum import Enum

from pydantic import BaseModel, Field

from h2_registry.credit.schemas import CreditRead, TransactionRead
from h2_registry.marketplace.pricing import PricingResult


class TransferPath(str, Enum):
    DIRECT = "direct"
    PRIVILEGED = "privileged"
    RECORDED_ONLY = "recorded_only"


class PurchaseResult(BaseModel):
    credit: CreditRead
    transferred: bool = Field(
        description="False when the sale was recorded but ownership could not be moved."
    )
    transfer_path: TransferPath
    transaction: TransactionRead | None = None
    unit_price: float
    total_price: float
    audit_recorded: bool = True
    message: str


class RetireRequest(BaseModel):
    reason: str | None = Field(
        default=None, description="Why the credit is retired, defaults to voluntary retirement."
    )


class RetireResult(BaseModel):
    credit: CreditRead
    transaction: TransactionRead | None = None
    audit_recorded: bool = True
    message: str


class MarketplaceCredit(BaseModel):
    credit: CreditRead
    pricing: PricingResult


class MarketStats(BaseModel):
    total_credits: int = 0
    total_volume: float = 0.0
    available_volume: float = 0.0
    retired_volume: float = 0.0
    average_price: float
    market_value: float = 0.0
    recent_transactions: list[TransactionRead] = []
