import datetime
from typing import Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field

from h2_registry import utils
from h2_registry.core.models.base import (
    CreditStatus,
    ProductionMethod,
    TransactionType,
)


class CreditBase(utils.ActiveRecord):
    owner_id: int = Field(
        foreign_key="registry_user.id",
        index=True,
        description="The User currently holding the credit.",
    )
    issuer_id: int = Field(
        foreign_key="registry_user.id",
        description="The producer that issued the credit.",
    )
    facility_id: int | None = Field(
        default=None,
        foreign_key="production_facility.id",
        description="The production facility that produced the hydrogen, if registered.",
    )
    volume: float = Field(
        gt=0,
        description="The quantity of hydrogen represented by the credit, in kg H2 equivalent.",
    )
    status: CreditStatus = Field(
        default=CreditStatus.ISSUED,
        index=True,
        description="""The lifecycle status of the credit. Credits move forward only,
                       from 'issued' to 'owned' to 'retired', and a retired credit is terminal.""",
    )
    production_method: str | None = Field(
        default=None,
        description="The production method of the hydrogen, e.g. solar or wind electrolysis.",
    )
    renewable_source: str | None = Field(
        default=None,
        description="The renewable electricity source used for production.",
    )
    blockchain_reference: str | None = Field(
        default=None,
        description="An external verification reference. Its presence marks the credit as verified.",
    )
    credit_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON),
        description="Free-form attributes such as the production method or retirement details.",
    )
    updated_at: datetime.datetime | None = Field(default=None)


class CreditRead(BaseModel):
    """A snapshot of a credit row, as returned by the data store."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    owner_id: int
    issuer_id: int
    facility_id: int | None = None
    volume: float
    status: CreditStatus
    production_method: str | None = None
    renewable_source: str | None = None
    blockchain_reference: str | None = None
    metadata: dict[str, Any] = pydantic.Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata", "credit_metadata"),
    )
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def none_metadata_to_empty(cls, v):
        return v or {}


class CreditCreate(BaseModel):
    owner_id: int
    issuer_id: int
    facility_id: int | None = None
    volume: float
    status: CreditStatus = CreditStatus.ISSUED
    production_method: str | None = None
    renewable_source: str | None = None
    blockchain_reference: str | None = None
    metadata: dict[str, Any] = {}


class CreditIssue(BaseModel):
    """An issuance request submitted by a producer."""

    volume: float = pydantic.Field(gt=0, description="Quantity in kg H2 equivalent.")
    facility_id: int | None = None
    production_method: ProductionMethod | None = None
    renewable_source: str | None = None
    blockchain_reference: str | None = None
    metadata: dict[str, Any] = {}

    @field_validator("production_method", mode="before")
    @classmethod
    def lower_production_method(cls, v):
        if isinstance(v, str):
            return v.strip().lower() or None
        return v


class CreditQuery(BaseModel):
    """Filters for credit searches. Results are returned newest first."""

    statuses: list[CreditStatus] | None = None
    production_methods: list[str] | None = None
    renewable_source: str | None = None
    owner_id: int | None = None
    min_volume: float | None = None
    max_volume: float | None = None
    created_from: datetime.datetime | None = None
    created_to: datetime.datetime | None = None
    # Restricts results to credits held by this user or open for purchase
    visible_to: int | None = None
    limit: int | None = pydantic.Field(default=50, ge=1)


class CreditTransferRequest(BaseModel):
    to_owner_id: int


class TransactionBase(utils.ActiveRecord):
    credit_id: int = Field(foreign_key="credit.id", index=True)
    from_owner_id: int | None = Field(
        default=None,
        foreign_key="registry_user.id",
        description="The previous holder. Empty for issuance.",
    )
    to_owner_id: int | None = Field(
        default=None,
        foreign_key="registry_user.id",
        description="The new holder. Empty for retirement.",
    )
    transaction_type: TransactionType
    volume: float
    external_reference: str | None = Field(default=None)
    price_total: float | None = Field(default=None)
    price_per_unit: float | None = Field(default=None)
    transaction_metadata: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )


class TransactionCreate(BaseModel):
    credit_id: int
    from_owner_id: int | None = None
    to_owner_id: int | None = None
    transaction_type: TransactionType
    volume: float
    external_reference: str | None = None
    price_total: float | None = None
    price_per_unit: float | None = None
    metadata: dict[str, Any] = {}


class TransactionRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    credit_id: int
    from_owner_id: int | None = None
    to_owner_id: int | None = None
    transaction_type: TransactionType
    volume: float
    external_reference: str | None = None
    price_total: float | None = None
    price_per_unit: float | None = None
    metadata: dict[str, Any] = pydantic.Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata", "transaction_metadata"),
    )
    created_at: datetime.datetime | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def none_metadata_to_empty(cls, v):
        return v or {}


class BulkImportResult(BaseModel):
    imported: int
    credits: list[CreditRead]


class CreditTransferResult(BaseModel):
    credit: CreditRead
    transaction: TransactionRead | None = None
    audit_recorded: bool = True
