"""Data store access for credits and their transaction log.

The marketplace and credit services depend only on the ``CreditStore``
protocol. ``SQLCreditStore`` implements it over SQLModel sessions, evaluating a
``RowLevelPolicy`` for the acting user the way a managed Postgres deployment
enforces row level security. A store constructed without an acting user runs
with the service role and bypasses the policy.
"""

from enum import Enum
from typing import Any, Callable, Protocol

from esdbclient import EventStoreDBClient
from pydantic import BaseModel
from sqlalchemy import or_, update
from sqlalchemy.exc import (
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as SATimeoutError
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import SelectOfScalar
from starlette.concurrency import run_in_threadpool

from h2_registry.core.database.events import create_event
from h2_registry.core.exceptions import (
    InvalidCreditStateError,
    StoreError,
    StorePermissionDeniedError,
    StoreUnavailableError,
)
from h2_registry.core.models.base import (
    ALLOWED_STATUS_TRANSITIONS,
    CreditStatus,
    EventTypes,
    utc_datetime_now,
)
from h2_registry.credit.models import Credit, CreditTransaction
from h2_registry.credit.schemas import (
    CreditCreate,
    CreditQuery,
    CreditRead,
    TransactionCreate,
    TransactionRead,
)
from h2_registry.logging_config import logger


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    NO_ROWS_MATCHED = "no_rows_matched"
    PERMISSION_DENIED = "permission_denied"


class ConditionalUpdateResult(BaseModel):
    outcome: UpdateOutcome
    affected_rows: int = 0
    credit: CreditRead | None = None
    reason: str | None = None


class CreditStore(Protocol):
    async def get_credit(self, credit_id: int) -> CreditRead | None: ...

    async def update_credit_conditional(
        self,
        credit_id: int,
        expected_owner_id: int,
        expected_status: CreditStatus,
        new_owner_id: int,
        new_status: CreditStatus,
    ) -> ConditionalUpdateResult: ...

    async def insert_transaction(
        self, transaction: TransactionCreate
    ) -> TransactionRead: ...

    async def update_credit_status(
        self,
        credit_id: int,
        new_status: CreditStatus,
        metadata_patch: dict[str, Any] | None = None,
        expected_status: CreditStatus | None = None,
    ) -> CreditRead | None: ...

    async def insert_credit(self, credit: CreditCreate) -> CreditRead: ...

    async def list_credits(self, query: CreditQuery) -> list[CreditRead]: ...

    async def list_transactions(
        self, credit_id: int | None = None, limit: int | None = None
    ) -> list[TransactionRead]: ...


class RowLevelPolicy(BaseModel):
    """Write rules applied per acting user.

    A holder may modify their own credit rows. With marketplace claims enabled
    a user may also take ownership of an issued credit for themselves. A
    transaction row may only be written by one of its parties.
    """

    enabled: bool = True
    allow_marketplace_claims: bool = False

    def can_update_credit(
        self, actor_id: int | None, credit: Credit, new_owner_id: int
    ) -> bool:
        if not self.enabled or actor_id is None:
            return True
        if credit.owner_id == actor_id:
            return True
        return (
            self.allow_marketplace_claims
            and credit.status == CreditStatus.ISSUED
            and new_owner_id == actor_id
        )

    def can_insert_credit(self, actor_id: int | None, credit: CreditCreate) -> bool:
        if not self.enabled or actor_id is None:
            return True
        return credit.issuer_id == actor_id

    def can_insert_transaction(
        self, actor_id: int | None, transaction: TransactionCreate
    ) -> bool:
        if not self.enabled or actor_id is None:
            return True
        return actor_id in (transaction.from_owner_id, transaction.to_owner_id)


def credit_to_read(credit: Credit) -> CreditRead:
    return CreditRead.model_validate(credit.model_dump())


def transaction_to_read(transaction: CreditTransaction) -> TransactionRead:
    return TransactionRead.model_validate(transaction.model_dump())


class SQLCreditStore:
    """``CreditStore`` over SQLModel sessions.

    Session work is blocking, so every operation runs in Starlette's threadpool
    and SQLAlchemy failures are translated into store errors: connection level
    failures become the retryable ``StoreUnavailableError``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        actor_id: int | None = None,
        policy: RowLevelPolicy | None = None,
        esdb_client: EventStoreDBClient | None = None,
    ):
        self._session_factory = session_factory
        self.actor_id = actor_id
        self.policy = policy or RowLevelPolicy()
        self._esdb_client = esdb_client

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(fn, *args)
        except (OperationalError, InterfaceError, SATimeoutError) as e:
            logger.error(f"Data store unavailable during {operation}: {str(e)}")
            raise StoreUnavailableError(
                f"Data store unavailable during {operation}, please retry",
                details={"operation": operation},
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Data store error during {operation}: {str(e)}")
            raise StoreError(
                f"Data store error during {operation}",
                details={"operation": operation},
            ) from e

    ### Credits ###

    async def get_credit(self, credit_id: int) -> CreditRead | None:
        return await self._run("get_credit", self._get_credit, credit_id)

    def _get_credit(self, credit_id: int) -> CreditRead | None:
        with self._session_factory() as session:
            credit = session.get(Credit, credit_id)
            return credit_to_read(credit) if credit else None

    async def update_credit_conditional(
        self,
        credit_id: int,
        expected_owner_id: int,
        expected_status: CreditStatus,
        new_owner_id: int,
        new_status: CreditStatus,
    ) -> ConditionalUpdateResult:
        return await self._run(
            "update_credit_conditional",
            self._update_credit_conditional,
            credit_id,
            expected_owner_id,
            expected_status,
            new_owner_id,
            new_status,
        )

    def _update_credit_conditional(
        self,
        credit_id: int,
        expected_owner_id: int,
        expected_status: CreditStatus,
        new_owner_id: int,
        new_status: CreditStatus,
    ) -> ConditionalUpdateResult:
        if new_status not in ALLOWED_STATUS_TRANSITIONS[expected_status]:
            raise InvalidCreditStateError(
                f"Credit {credit_id} cannot move from {expected_status.value} to {new_status.value}",
                current_status=expected_status.value,
            )

        with self._session_factory() as session:
            current = session.get(Credit, credit_id)
            if current is not None and not self.policy.can_update_credit(
                self.actor_id, current, new_owner_id
            ):
                return ConditionalUpdateResult(
                    outcome=UpdateOutcome.PERMISSION_DENIED,
                    reason=f"User {self.actor_id} may not modify credit {credit_id}",
                )

            stmt = (
                update(Credit)
                .where(
                    col(Credit.id) == credit_id,
                    col(Credit.status) == expected_status,
                    col(Credit.owner_id) == expected_owner_id,
                )
                .values(
                    owner_id=new_owner_id,
                    status=new_status,
                    updated_at=utc_datetime_now(),
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            affected_rows = result.rowcount
            session.commit()

            if affected_rows == 0:
                return ConditionalUpdateResult(
                    outcome=UpdateOutcome.NO_ROWS_MATCHED, affected_rows=0
                )

            session.expire_all()
            updated = session.get(Credit, credit_id)

        create_event(
            entity_id=credit_id,
            entity_name=Credit.__name__,
            event_type=EventTypes.UPDATE,
            esdb_client=self._esdb_client,
            attributes_before={
                "owner_id": expected_owner_id,
                "status": expected_status.value,
            },
            attributes_after={"owner_id": new_owner_id, "status": new_status.value},
        )

        return ConditionalUpdateResult(
            outcome=UpdateOutcome.UPDATED,
            affected_rows=affected_rows,
            credit=credit_to_read(updated) if updated else None,
        )

    async def update_credit_status(
        self,
        credit_id: int,
        new_status: CreditStatus,
        metadata_patch: dict[str, Any] | None = None,
        expected_status: CreditStatus | None = None,
    ) -> CreditRead | None:
        """Set the credit status and merge ``metadata_patch`` into its metadata.

        Returns None when no row matched, including when ``expected_status`` no
        longer holds.
        """
        return await self._run(
            "update_credit_status",
            self._update_credit_status,
            credit_id,
            new_status,
            metadata_patch,
            expected_status,
        )

    def _update_credit_status(
        self,
        credit_id: int,
        new_status: CreditStatus,
        metadata_patch: dict[str, Any] | None,
        expected_status: CreditStatus | None,
    ) -> CreditRead | None:
        with self._session_factory() as session:
            credit = session.get(Credit, credit_id)
            if credit is None:
                return None

            if not self.policy.can_update_credit(
                self.actor_id, credit, credit.owner_id
            ):
                raise StorePermissionDeniedError(
                    f"User {self.actor_id} may not modify credit {credit_id}",
                    details={"credit_id": credit_id},
                )

            current_status = CreditStatus(credit.status)
            if expected_status is not None and current_status != expected_status:
                return None

            if new_status not in ALLOWED_STATUS_TRANSITIONS[current_status]:
                raise InvalidCreditStateError(
                    f"Credit {credit_id} cannot move from {current_status.value} to {new_status.value}",
                    current_status=current_status.value,
                )

            metadata = {**(credit.credit_metadata or {}), **(metadata_patch or {})}
            stmt = (
                update(Credit)
                .where(
                    col(Credit.id) == credit_id,
                    col(Credit.status) == current_status,
                )
                .values(
                    status=new_status,
                    credit_metadata=metadata,
                    updated_at=utc_datetime_now(),
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()

            if result.rowcount == 0:
                return None

            session.expire_all()
            updated = session.get(Credit, credit_id)

        create_event(
            entity_id=credit_id,
            entity_name=Credit.__name__,
            event_type=EventTypes.UPDATE,
            esdb_client=self._esdb_client,
            attributes_before={"status": current_status.value},
            attributes_after={"status": new_status.value, "metadata": metadata_patch},
        )

        return credit_to_read(updated) if updated else None

    async def insert_credit(self, credit: CreditCreate) -> CreditRead:
        return await self._run("insert_credit", self._insert_credit, credit)

    def _insert_credit(self, credit: CreditCreate) -> CreditRead:
        if not self.policy.can_insert_credit(self.actor_id, credit):
            raise StorePermissionDeniedError(
                f"User {self.actor_id} may not issue credits on behalf of user {credit.issuer_id}"
            )

        credit_dict = credit.model_dump(exclude={"metadata"})
        credit_dict["credit_metadata"] = credit.metadata
        with self._session_factory() as session:
            created = Credit.create(credit_dict, session, self._esdb_client)
            return credit_to_read(created[0])  # type: ignore

    async def list_credits(self, query: CreditQuery) -> list[CreditRead]:
        return await self._run("list_credits", self._list_credits, query)

    def _list_credits(self, query: CreditQuery) -> list[CreditRead]:
        stmt: SelectOfScalar = select(Credit)

        if query.statuses:
            stmt = stmt.where(col(Credit.status).in_(query.statuses))
        if query.production_methods:
            stmt = stmt.where(
                col(Credit.production_method).in_(
                    [m.lower() for m in query.production_methods]
                )
            )
        if query.renewable_source:
            stmt = stmt.where(Credit.renewable_source == query.renewable_source)
        if query.owner_id is not None:
            stmt = stmt.where(Credit.owner_id == query.owner_id)
        if query.min_volume is not None:
            stmt = stmt.where(Credit.volume >= query.min_volume)
        if query.max_volume is not None:
            stmt = stmt.where(Credit.volume <= query.max_volume)
        if query.created_from is not None:
            stmt = stmt.where(Credit.created_at >= query.created_from)
        if query.created_to is not None:
            stmt = stmt.where(Credit.created_at <= query.created_to)
        if query.visible_to is not None:
            stmt = stmt.where(
                or_(
                    Credit.owner_id == query.visible_to,
                    Credit.status == CreditStatus.ISSUED,
                )
            )

        stmt = stmt.order_by(col(Credit.created_at).desc(), col(Credit.id).desc())
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        with self._session_factory() as session:
            return [credit_to_read(credit) for credit in session.exec(stmt).all()]

    ### Transactions ###

    async def insert_transaction(
        self, transaction: TransactionCreate
    ) -> TransactionRead:
        return await self._run(
            "insert_transaction", self._insert_transaction, transaction
        )

    def _insert_transaction(self, transaction: TransactionCreate) -> TransactionRead:
        if not self.policy.can_insert_transaction(self.actor_id, transaction):
            raise StorePermissionDeniedError(
                f"User {self.actor_id} is not a party to this transaction",
                details={"credit_id": transaction.credit_id},
            )

        transaction_dict = transaction.model_dump(exclude={"metadata"})
        transaction_dict["transaction_metadata"] = transaction.metadata
        with self._session_factory() as session:
            created = CreditTransaction.create(
                transaction_dict, session, self._esdb_client
            )
            return transaction_to_read(created[0])  # type: ignore

    async def list_transactions(
        self, credit_id: int | None = None, limit: int | None = None
    ) -> list[TransactionRead]:
        return await self._run(
            "list_transactions", self._list_transactions, credit_id, limit
        )

    def _list_transactions(
        self, credit_id: int | None, limit: int | None
    ) -> list[TransactionRead]:
        stmt: SelectOfScalar = select(CreditTransaction)
        if credit_id is not None:
            stmt = stmt.where(CreditTransaction.credit_id == credit_id)
        stmt = stmt.order_by(
            col(CreditTransaction.created_at).desc(), col(CreditTransaction.id).desc()
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._session_factory() as session:
            return [transaction_to_read(t) for t in session.exec(stmt).all()]
