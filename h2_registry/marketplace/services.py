import datetime
from decimal import Decimal
from typing import Callable

import pandas as pd

from h2_registry.core.exceptions import (
    CreditAlreadyRetiredError,
    CreditLostRaceError,
    CreditNotAvailableError,
    CreditNotFoundError,
    CreditOwnershipError,
    CreditTransferDeniedError,
    SelfPurchaseError,
    StoreError,
    StoreUnavailableError,
)
from h2_registry.core.models.base import (
    CreditStatus,
    TransactionType,
    utc_datetime_now,
)
from h2_registry.core.services import create_external_reference
from h2_registry.credit.schemas import (
    CreditQuery,
    CreditRead,
    TransactionCreate,
)
from h2_registry.credit.services import CreditService
from h2_registry.credit.store import CreditStore, UpdateOutcome
from h2_registry.logging_config import logger
from h2_registry.marketplace.admin import AdminMarketplaceService
from h2_registry.marketplace.pricing import (
    PricingCalculator,
    PricingResult,
    round_half_up,
)
from h2_registry.marketplace.schemas import (
    MarketplaceCredit,
    MarketStats,
    PurchaseResult,
    RetireResult,
    TransferPath,
)
from h2_registry.settings import settings

DEFAULT_RETIREMENT_REASON = "Voluntary retirement"
RECENT_TRANSACTIONS_LIMIT = 10


def _last_activity(credit: CreditRead) -> pd.Timestamp:
    moment = credit.updated_at or credit.created_at
    if moment is None:
        return pd.Timestamp.min.tz_localize("UTC")
    return pd.to_datetime(moment, utc=True)


class MarketplaceService(CreditService):
    """Prices, sells and retires credits on behalf of a single acting user.

    A purchase first attempts a conditional update as the buyer. When access
    control refuses it, the privileged service (if this process has one)
    performs the transfer instead, and failing that the sale is recorded
    without moving ownership. Every purchase that passes validation appends
    exactly one transfer transaction.
    """

    def __init__(
        self,
        store: CreditStore,
        admin: AdminMarketplaceService | None = None,
        pricing: PricingCalculator | None = None,
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
        allow_recorded_only: bool = settings.ALLOW_RECORDED_ONLY_PURCHASES,
        clock: Callable[[], datetime.datetime] = utc_datetime_now,
    ):
        super().__init__(store, timeout=timeout, clock=clock)
        self.admin = admin
        self.pricing = pricing or PricingCalculator(clock=clock)
        self.allow_recorded_only = allow_recorded_only

    ### Pricing ###

    async def get_credit_price(self, credit_id: int) -> PricingResult:
        credit = await self._get_credit_or_raise(credit_id)
        return self.pricing.calculate_price(credit)

    async def get_marketplace_credits(
        self, limit: int | None = None
    ) -> list[MarketplaceCredit]:
        """Credits open for purchase, newest first, each with its current price."""
        query = CreditQuery(
            statuses=[CreditStatus.ISSUED],
            limit=limit or settings.MARKETPLACE_PAGE_SIZE,
        )
        credits = await self._call("list_credits", self.store.list_credits(query))
        return [
            MarketplaceCredit(credit=credit, pricing=self.pricing.calculate_price(credit))
            for credit in credits
        ]

    async def get_user_owned_credits(self, user_id: int) -> list[CreditRead]:
        query = CreditQuery(
            statuses=[CreditStatus.OWNED, CreditStatus.RETIRED],
            owner_id=user_id,
            limit=None,
        )
        credits = await self._call("list_credits", self.store.list_credits(query))
        return sorted(credits, key=_last_activity, reverse=True)

    ### Purchase ###

    async def purchase_credit(self, credit_id: int, buyer_id: int) -> PurchaseResult:
        """Sell an issued credit to ``buyer_id`` at its current price.

        Raises:
            CreditNotFoundError: If the credit does not exist.
            CreditNotAvailableError: If the credit is not in the issued status.
            SelfPurchaseError: If the buyer already holds the credit.
            CreditLostRaceError: If another buyer acquired the credit first.
            CreditTransferDeniedError: If ownership cannot be moved and
                recorded-only purchases are disabled.
            StoreUnavailableError: On a transient store failure, the purchase
                may be retried.
        """
        credit = await self._get_credit_or_raise(credit_id)

        if credit.status != CreditStatus.ISSUED:
            logger.error(
                f"Purchase of credit {credit_id} rejected, status is {credit.status.value}"
            )
            raise CreditNotAvailableError(credit_id, credit.status.value)

        if credit.owner_id == buyer_id:
            logger.error(f"User {buyer_id} attempted to purchase own credit {credit_id}")
            raise SelfPurchaseError(credit_id)

        seller_id = credit.owner_id
        pricing = self.pricing.calculate_price(credit)

        update_result = await self._call(
            "update_credit_conditional",
            self.store.update_credit_conditional(
                credit_id=credit_id,
                expected_owner_id=seller_id,
                expected_status=CreditStatus.ISSUED,
                new_owner_id=buyer_id,
                new_status=CreditStatus.OWNED,
            ),
        )
        outcome = update_result.outcome

        if outcome == UpdateOutcome.NO_ROWS_MATCHED:
            # Row level filtering also surfaces as zero matched rows, so only a
            # row that has actually changed counts as a lost race
            current = await self._call("get_credit", self.store.get_credit(credit_id))
            if (
                current is None
                or current.status != CreditStatus.ISSUED
                or current.owner_id != seller_id
            ):
                logger.warning(
                    f"Credit {credit_id} was acquired by another buyer before user {buyer_id}"
                )
                raise CreditLostRaceError(credit_id)

            logger.info(
                f"Direct update of credit {credit_id} matched no rows on an unchanged row, "
                "treating as access denied"
            )
            outcome = UpdateOutcome.PERMISSION_DENIED

        if outcome == UpdateOutcome.UPDATED:
            final_credit = update_result.credit or credit
            transfer_path = TransferPath.DIRECT
            logger.info(f"Credit {credit_id} transferred directly to user {buyer_id}")
        else:
            logger.info(
                f"Direct transfer of credit {credit_id} denied: {update_result.reason}"
            )
            final_credit, transfer_path = await self._privileged_transfer(
                credit, buyer_id
            )

        transferred = transfer_path != TransferPath.RECORDED_ONLY

        transaction, audit_recorded = await self._record_transaction(
            TransactionCreate(
                credit_id=credit_id,
                from_owner_id=seller_id,
                to_owner_id=buyer_id,
                transaction_type=TransactionType.TRANSFER,
                volume=credit.volume,
                external_reference=create_external_reference("purchase", self.clock()),
                price_total=pricing.total_price,
                price_per_unit=pricing.unit_price,
                metadata={
                    "transferred": transferred,
                    "transferPath": transfer_path.value,
                    "pricingFactors": pricing.factors.model_dump(),
                },
            )
        )

        if transferred:
            message = (
                f"Successfully purchased {credit.volume:g} kg H2 credits "
                f"for ${pricing.total_price:.2f}"
            )
        else:
            message = (
                f"Purchase of {credit.volume:g} kg H2 credits for ${pricing.total_price:.2f} "
                "was recorded, but ownership could not be transferred"
            )
        if not audit_recorded:
            message += ". The transaction log entry could not be written"

        return PurchaseResult(
            credit=final_credit,
            transferred=transferred,
            transfer_path=transfer_path,
            transaction=transaction,
            unit_price=pricing.unit_price,
            total_price=pricing.total_price,
            audit_recorded=audit_recorded,
            message=message,
        )

    async def _privileged_transfer(
        self, credit: CreditRead, buyer_id: int
    ) -> tuple[CreditRead, TransferPath]:
        if self.admin is None:
            logger.warning(
                f"No privileged transfer available for credit {credit.id}, "
                "service role key is not configured"
            )
        else:
            try:
                transferred_credit = await self._call(
                    "force_transfer_ownership",
                    self.admin.force_transfer_ownership(credit.id, buyer_id),
                )
                logger.info(
                    f"Credit {credit.id} transferred to user {buyer_id} with the service role"
                )
                return transferred_credit, TransferPath.PRIVILEGED
            except StoreUnavailableError:
                # The outcome of the privileged update is unknown, retrying is safe
                raise
            except StoreError as e:
                logger.warning(
                    f"Privileged transfer of credit {credit.id} failed: {e.message}"
                )

        if not self.allow_recorded_only:
            raise CreditTransferDeniedError(
                f"Credit {credit.id} could not be transferred to user {buyer_id}, "
                "access control denied the update",
                details={"credit_id": credit.id},
            )

        logger.warning(
            f"Recording purchase of credit {credit.id} by user {buyer_id} without transfer"
        )
        return credit, TransferPath.RECORDED_ONLY

    ### Retirement ###

    async def retire_credit(
        self, credit_id: int, owner_id: int, reason: str | None = None
    ) -> RetireResult:
        """Permanently retire a credit held by ``owner_id``.

        Raises:
            CreditNotFoundError: If the credit does not exist.
            CreditOwnershipError: If the caller does not hold the credit.
            CreditAlreadyRetiredError: If the credit is already retired.
            CreditLostRaceError: If the credit changed hands during the retirement.
        """
        credit = await self._get_credit_or_raise(credit_id)

        if credit.owner_id != owner_id:
            logger.error(f"User {owner_id} attempted to retire credit {credit_id} held by another user")
            raise CreditOwnershipError(credit_id, owner_id)

        if credit.status == CreditStatus.RETIRED:
            logger.error(f"Credit {credit_id} is already retired")
            raise CreditAlreadyRetiredError(credit_id)

        reason = reason or DEFAULT_RETIREMENT_REASON
        retired_at = self.clock()

        retired = await self._call(
            "update_credit_status",
            self.store.update_credit_status(
                credit_id,
                CreditStatus.RETIRED,
                metadata_patch={
                    "retirementReason": reason,
                    "retirementDate": retired_at.isoformat(),
                },
                expected_status=credit.status,
            ),
        )

        if retired is None:
            current = await self._call("get_credit", self.store.get_credit(credit_id))
            if current is None:
                raise CreditNotFoundError(credit_id)
            if current.status == CreditStatus.RETIRED:
                raise CreditAlreadyRetiredError(credit_id)
            if current.owner_id != owner_id:
                raise CreditOwnershipError(credit_id, owner_id)
            raise CreditLostRaceError(credit_id)

        logger.info(f"Credit {credit_id} retired by user {owner_id}: {reason}")

        transaction, audit_recorded = await self._record_transaction(
            TransactionCreate(
                credit_id=credit_id,
                from_owner_id=owner_id,
                to_owner_id=None,
                transaction_type=TransactionType.RETIRE,
                volume=credit.volume,
                external_reference=create_external_reference("retire", retired_at),
                metadata={"retirementReason": reason},
            )
        )

        message = f"Successfully retired {credit.volume:g} kg H2 credits"
        if not audit_recorded:
            message += ". The transaction log entry could not be written"

        return RetireResult(
            credit=retired,
            transaction=transaction,
            audit_recorded=audit_recorded,
            message=message,
        )

    ### Statistics ###

    async def get_market_stats(self) -> MarketStats:
        """Aggregate volumes and prices across all credits.

        Returns zeroed statistics when the store cannot be read.
        """
        base_price = self.pricing.base_price
        try:
            credits = await self._call(
                "list_credits", self.store.list_credits(CreditQuery(limit=None))
            )
            recent_transactions = await self._call(
                "list_transactions",
                self.store.list_transactions(limit=RECENT_TRANSACTIONS_LIMIT),
            )
        except StoreError as e:
            logger.error(f"Could not compute market statistics: {e.message}")
            return MarketStats(average_price=float(base_price))

        if not credits:
            return MarketStats(
                average_price=float(base_price),
                recent_transactions=recent_transactions,
            )

        credits_df = pd.DataFrame(
            [
                {
                    "status": credit.status.value,
                    "volume": credit.volume,
                    "unit_price": self.pricing.calculate_price(credit).unit_price
                    if credit.status == CreditStatus.ISSUED
                    else None,
                }
                for credit in credits
            ]
        )
        credits_df["volume"] = pd.to_numeric(credits_df["volume"], errors="coerce").fillna(0)

        issued = credits_df[credits_df["status"] == CreditStatus.ISSUED.value]
        retired = credits_df[credits_df["status"] == CreditStatus.RETIRED.value]

        available_volume = Decimal(str(issued["volume"].sum()))
        average_price = (
            Decimal(str(issued["unit_price"].mean())) if not issued.empty else base_price
        )

        return MarketStats(
            total_credits=len(credits_df),
            total_volume=float(round_half_up(Decimal(str(credits_df["volume"].sum())))),
            available_volume=float(round_half_up(available_volume)),
            retired_volume=float(round_half_up(Decimal(str(retired["volume"].sum())))),
            average_price=float(round_half_up(average_price)),
            market_value=float(round_half_up(available_volume * average_price)),
            recent_transactions=recent_transactions,
        )
