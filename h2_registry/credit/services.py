import asyncio
import datetime
from typing import Any, Awaitable, Callable, TypeVar

import pandas as pd
from pydantic import ValidationError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from h2_registry.core.exceptions import (
    AuditWriteError,
    CreditLostRaceError,
    CreditNotAvailableError,
    CreditNotFoundError,
    CreditOwnershipError,
    CreditTransferDeniedError,
    CreditValidationError,
    SelfTransferError,
    StoreError,
    StoreTimeoutError,
)
from h2_registry.core.models.base import (
    CreditStatus,
    TransactionType,
    utc_datetime_now,
)
from h2_registry.core.services import create_external_reference
from h2_registry.credit.schemas import (
    BulkImportResult,
    CreditCreate,
    CreditIssue,
    CreditQuery,
    CreditRead,
    CreditTransferResult,
    TransactionCreate,
    TransactionRead,
)
from h2_registry.credit.store import CreditStore, UpdateOutcome
from h2_registry.credit.validation import (
    can_view_all_credits,
    can_view_credit,
    validate_credit_issue,
    validate_query_date_range,
)
from h2_registry.logging_config import logger
from h2_registry.settings import settings
from h2_registry.user.models import User
from h2_registry.utils import parse_import_file

T = TypeVar("T")

# Column names accepted in bulk import files, mapped to issuance fields
IMPORT_COLUMN_ALIASES = {
    "facilityId": "facility_id",
    "productionMethod": "production_method",
    "renewableSource": "renewable_source",
    "blockchainReference": "blockchain_reference",
    "blockchain_tx_hash": "blockchain_reference",
}


def parse_credit_import(filename: str | None, content: str) -> list[CreditIssue]:
    """Parse a CSV or JSON import file into validated issuance requests.

    Raises:
        CreditValidationError: If the file cannot be parsed or any row is invalid.
    """
    try:
        import_df = parse_import_file(filename, content)
    except ValueError as e:
        raise CreditValidationError(str(e))

    import_df = import_df.rename(columns=IMPORT_COLUMN_ALIASES)
    if "volume" not in import_df.columns:
        raise CreditValidationError("Import file must contain a 'volume' column")

    # Empty cells become None rather than NaN so optional fields validate
    import_df = import_df.astype(object).where(pd.notna(import_df), None)

    credit_issues = []
    for row_number, row in enumerate(import_df.to_dict(orient="records"), start=1):
        try:
            credit_issues.append(CreditIssue.model_validate(row))
        except ValidationError as e:
            raise CreditValidationError(
                f"Row {row_number} of the import file is invalid",
                details={"row": row_number, "errors": e.errors(include_url=False)},
            )

    return credit_issues



class CreditService:
    """Issues, searches and transfers credits on behalf of a single acting user.

    Every store call is bounded by ``timeout`` seconds and raises
    ``StoreTimeoutError`` when the deadline passes.
    """

    def __init__(
        self,
        store: CreditStore,
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime.datetime] = utc_datetime_now,
    ):
        self.store = store
        self.timeout = timeout
        self.clock = clock

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Store call {operation} timed out after {self.timeout}s")
            raise StoreTimeoutError(operation, self.timeout)

    async def _get_credit_or_raise(self, credit_id: int) -> CreditRead:
        credit = await self._call("get_credit", self.store.get_credit(credit_id))
        if credit is None:
            logger.error(f"Credit {credit_id} not found")
            raise CreditNotFoundError(credit_id)
        return credit

    async def _record_transaction(
        self, transaction: TransactionCreate
    ) -> tuple[TransactionRead | None, bool]:
        """Append to the transaction log. The credit has already been mutated,
        so a failed write is logged and reported instead of raised."""
        try:
            recorded = await self._call(
                "insert_transaction", self.store.insert_transaction(transaction)
            )
        except StoreError as e:
            audit_error = AuditWriteError(
                f"Could not record {transaction.transaction_type.value} transaction "
                f"for credit {transaction.credit_id}: {e.message}",
                details={"credit_id": transaction.credit_id},
            )
            logger.error(audit_error.message)
            return None, False

        return recorded, True

    ### Queries ###

    async def get_credit(self, credit_id: int, viewer: User | None = None) -> CreditRead:
        """Read a credit. A viewer who may not see it gets the same error as for
        a credit that does not exist."""
        credit = await self._get_credit_or_raise(credit_id)
        if viewer is not None and not can_view_credit(viewer, credit):
            raise CreditNotFoundError(credit_id)
        return credit

    async def search_credits(
        self, query: CreditQuery, viewer: User | None = None
    ) -> list[CreditRead]:
        validate_query_date_range(query)
        if viewer is not None and not can_view_all_credits(viewer):
            query = query.model_copy(update={"visible_to": viewer.id})
        return await self._call("list_credits", self.store.list_credits(query))

    async def get_credit_transactions(
        self, credit_id: int, viewer: User | None = None
    ) -> list[TransactionRead]:
        """Return the transaction history of a credit, newest first."""
        await self.get_credit(credit_id, viewer)
        return await self._call(
            "list_transactions", self.store.list_transactions(credit_id=credit_id)
        )

    ### Issuance ###

    async def issue_credit(
        self,
        producer: User,
        credit_issue: CreditIssue,
        session: Session,
    ) -> CreditRead:
        """Issue a new credit to the producer and record the issuance.

        Args:
            producer (User): The producer issuing the credit
            credit_issue (CreditIssue): The issuance request
            session (Session): The database session used to validate the facility

        Returns:
            CreditRead: The issued credit
        """
        facility = await run_in_threadpool(
            validate_credit_issue, session, credit_issue, producer
        )

        issued_at = self.clock()
        production_method = (
            credit_issue.production_method.value if credit_issue.production_method else None
        )

        metadata: dict[str, Any] = {**credit_issue.metadata, "issuedAt": issued_at.isoformat()}
        if production_method:
            metadata.setdefault("productionMethod", production_method)
        if facility is not None:
            metadata["facilityName"] = facility.facility_name
            metadata["facilityLocation"] = facility.location

        credit = await self._call(
            "insert_credit",
            self.store.insert_credit(
                CreditCreate(
                    owner_id=producer.id,  # type: ignore
                    issuer_id=producer.id,  # type: ignore
                    facility_id=credit_issue.facility_id,
                    volume=credit_issue.volume,
                    status=CreditStatus.ISSUED,
                    production_method=production_method,
                    renewable_source=credit_issue.renewable_source,
                    blockchain_reference=credit_issue.blockchain_reference,
                    metadata=metadata,
                )
            ),
        )
        logger.info(f"Issued credit {credit.id} of {credit.volume} kg to user {producer.id}")

        await self._record_transaction(
            TransactionCreate(
                credit_id=credit.id,
                from_owner_id=None,
                to_owner_id=producer.id,
                transaction_type=TransactionType.ISSUE,
                volume=credit.volume,
                external_reference=credit.blockchain_reference
                or create_external_reference("issue", issued_at),
            )
        )

        return credit

    async def import_credits(
        self,
        producer: User,
        filename: str | None,
        content: str,
        session: Session,
    ) -> BulkImportResult:
        """Issue one credit per row of the import file.

        Every row is validated before any credit is issued.
        """
        credit_issues = parse_credit_import(filename, content)
        for credit_issue in credit_issues:
            await run_in_threadpool(validate_credit_issue, session, credit_issue, producer)

        credits = [
            await self.issue_credit(producer, credit_issue, session)
            for credit_issue in credit_issues
        ]
        logger.info(f"Imported {len(credits)} credits for user {producer.id}")

        return BulkImportResult(imported=len(credits), credits=credits)

    ### Transfer ###

    async def transfer_credit(
        self,
        credit_id: int,
        from_owner_id: int,
        to_owner_id: int,
    ) -> CreditTransferResult:
        """Move a credit from its current holder to another user.

        Raises:
            CreditNotFoundError: If the credit does not exist.
            CreditOwnershipError: If ``from_owner_id`` does not hold the credit.
            CreditNotAvailableError: If the credit is retired.
            SelfTransferError: If the recipient already holds the credit.
            CreditLostRaceError: If the credit changed between the read and the update.
            CreditTransferDeniedError: If access control refused the update.
            StoreTimeoutError: If a store call does not complete in time.
        """
        credit = await self._get_credit_or_raise(credit_id)

        if credit.owner_id != from_owner_id:
            raise CreditOwnershipError(credit_id, from_owner_id)
        if credit.status == CreditStatus.RETIRED:
            raise CreditNotAvailableError(credit_id, credit.status.value)
        if to_owner_id == from_owner_id:
            raise SelfTransferError(credit_id)

        result = await self._call(
            "update_credit_conditional",
            self.store.update_credit_conditional(
                credit_id=credit_id,
                expected_owner_id=from_owner_id,
                expected_status=credit.status,
                new_owner_id=to_owner_id,
                new_status=CreditStatus.OWNED,
            ),
        )

        if result.outcome == UpdateOutcome.NO_ROWS_MATCHED:
            logger.warning(f"Credit {credit_id} changed before the transfer could complete")
            raise CreditLostRaceError(credit_id)
        if result.outcome == UpdateOutcome.PERMISSION_DENIED or result.credit is None:
            raise CreditTransferDeniedError(
                f"Transfer of credit {credit_id} was denied: {result.reason}",
                details={"credit_id": credit_id},
            )

        logger.info(
            f"Credit {credit_id} transferred from user {from_owner_id} to user {to_owner_id}"
        )

        transaction, audit_recorded = await self._record_transaction(
            TransactionCreate(
                credit_id=credit_id,
                from_owner_id=from_owner_id,
                to_owner_id=to_owner_id,
                transaction_type=TransactionType.TRANSFER,
                volume=credit.volume,
                external_reference=create_external_reference("transfer", self.clock()),
            )
        )

        return CreditTransferResult(
            credit=result.credit, transaction=transaction, audit_recorded=audit_recorded
        )
