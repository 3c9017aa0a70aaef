from sqlmodel import Field

from h2_registry.credit.schemas import CreditBase, TransactionBase

# A credit represents a quantity of green hydrogen held by exactly one user at a
# time. Every change of holder or status is recorded as an immutable
# CreditTransaction row, so the transaction log is the full audit trail.


class Credit(CreditBase, table=True):
    __tablename__: str = "credit"  # type: ignore

    id: int | None = Field(
        default=None,
        description="A unique identifier for the credit.",
        primary_key=True,
    )


class CreditTransaction(TransactionBase, table=True):
    __tablename__: str = "credit_transaction"  # type: ignore

    id: int | None = Field(default=None, primary_key=True)
