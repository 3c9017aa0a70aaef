import asyncio
import datetime

import pytest

from h2_registry.core.exceptions import (
    CreditAlreadyRetiredError,
    CreditLostRaceError,
    CreditNotAvailableError,
    CreditNotFoundError,
    CreditOwnershipError,
    CreditTransferDeniedError,
    SelfPurchaseError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from h2_registry.core.models.base import CreditStatus, TransactionType
from h2_registry.marketplace.admin import AdminMarketplaceService
from h2_registry.marketplace.pricing import PricingCalculator
from h2_registry.marketplace.schemas import TransferPath
from h2_registry.marketplace.services import (
    DEFAULT_RETIREMENT_REASON,
    MarketplaceService,
)
from h2_registry.tests.fakes import NOW, InMemoryCreditStore, fixed_clock, make_credit

SELLER_ID = 1
BUYER_ID = 2
SECOND_BUYER_ID = 3


def make_service(
    store: InMemoryCreditStore,
    admin: AdminMarketplaceService | None = None,
    timeout: float = 1.0,
    allow_recorded_only: bool = True,
) -> MarketplaceService:
    return MarketplaceService(
        store=store,
        admin=admin,
        pricing=PricingCalculator(base_price=25.0, clock=fixed_clock),
        timeout=timeout,
        allow_recorded_only=allow_recorded_only,
        clock=fixed_clock,
    )


class TestPurchaseCredit:
    def test_direct_purchase(self, memory_store: InMemoryCreditStore):
        service = make_service(memory_store)

        result = asyncio.run(service.purchase_credit(1, BUYER_ID))

        assert result.transferred is True
        assert result.transfer_path == TransferPath.DIRECT
        assert result.audit_recorded is True
        assert result.unit_price == 25.0
        assert result.total_price == 250.0
        assert result.credit.owner_id == BUYER_ID
        assert result.credit.status == CreditStatus.OWNED
        assert result.message == "Successfully purchased 10 kg H2 credits for $250.00"

        assert memory_store.credits[1].owner_id == BUYER_ID

        transactions = memory_store.transactions_for(1)
        assert len(transactions) == 1
        transaction = transactions[0]
        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.from_owner_id == SELLER_ID
        assert transaction.to_owner_id == BUYER_ID
        assert transaction.volume == 10.0
        assert transaction.price_total == 250.0
        assert transaction.price_per_unit == 25.0
        assert transaction.external_reference == f"purchase_{int(NOW.timestamp() * 1000)}"
        assert transaction.metadata["transferred"] is True
        assert transaction.metadata["transferPath"] == "direct"
        assert result.transaction == transaction

    def test_purchase_validation_order(self, memory_store: InMemoryCreditStore):
        service = make_service(memory_store)

        # Test case 1: unknown credit
        with pytest.raises(CreditNotFoundError):
            asyncio.run(service.purchase_credit(99, BUYER_ID))

        # Test case 2: the seller buying their own issued credit
        with pytest.raises(SelfPurchaseError) as exc_info:
            asyncio.run(service.purchase_credit(1, SELLER_ID))
        assert exc_info.value.status_code == 400

        # Test case 3: status is checked before the buyer
        memory_store.credits[1] = memory_store.credits[1].model_copy(
            update={"status": CreditStatus.OWNED}
        )
        with pytest.raises(CreditNotAvailableError) as exc_info:
            asyncio.run(service.purchase_credit(1, SELLER_ID))
        assert exc_info.value.current_status == "owned"

        # Nothing was written for any of the rejected purchases
        assert memory_store.update_calls == 0
        assert memory_store.transactions == []

    def test_retired_credit_cannot_be_purchased(self):
        store = InMemoryCreditStore(
            [make_credit(credit_id=1, owner_id=SELLER_ID, status=CreditStatus.RETIRED)]
        )

        with pytest.raises(CreditNotAvailableError) as exc_info:
            asyncio.run(make_service(store).purchase_credit(1, BUYER_ID))

        assert exc_info.value.status_code == 409
        assert exc_info.value.details == {"current_status": "retired"}

    def test_concurrent_buyers_only_one_succeeds(
        self, memory_store: InMemoryCreditStore
    ):
        """The losing buyer gets a lost race conflict and writes no transaction.
        Only purchases whose ownership change was refused by access control are
        recorded without a transfer, a lost race is not."""
        service_a = make_service(memory_store)
        service_b = make_service(memory_store)

        async def race():
            return await asyncio.gather(
                service_a.purchase_credit(1, BUYER_ID),
                service_b.purchase_credit(1, SECOND_BUYER_ID),
                return_exceptions=True,
            )

        results = asyncio.run(race())

        # Both buyers read the issued credit before either update ran
        assert memory_store.update_calls == 2

        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], CreditLostRaceError)

        winner = successes[0]
        assert memory_store.credits[1].owner_id == winner.credit.owner_id
        assert memory_store.credits[1].status == CreditStatus.OWNED

        transactions = memory_store.transactions_for(1)
        assert len(transactions) == 1
        assert transactions[0].to_owner_id == winner.credit.owner_id

    def test_lost_race_records_no_transaction(self, memory_store: InMemoryCreditStore):
        def competing_sale(store: InMemoryCreditStore) -> None:
            store.credits[1] = store.credits[1].model_copy(
                update={"owner_id": SECOND_BUYER_ID, "status": CreditStatus.OWNED}
            )

        memory_store.before_update = competing_sale

        with pytest.raises(CreditLostRaceError) as exc_info:
            asyncio.run(make_service(memory_store).purchase_credit(1, BUYER_ID))

        assert exc_info.value.status_code == 409
        assert memory_store.credits[1].owner_id == SECOND_BUYER_ID
        assert memory_store.transactions == []

    def test_denied_update_without_admin_is_recorded_only(
        self, memory_store: InMemoryCreditStore
    ):
        memory_store.deny_updates = True

        result = asyncio.run(make_service(memory_store).purchase_credit(1, BUYER_ID))

        assert result.transferred is False
        assert result.transfer_path == TransferPath.RECORDED_ONLY
        assert result.credit.owner_id == SELLER_ID
        assert result.credit.status == CreditStatus.ISSUED
        assert "ownership could not be transferred" in result.message

        # Ownership is untouched but the sale is in the log
        assert memory_store.credits[1].owner_id == SELLER_ID
        transactions = memory_store.transactions_for(1)
        assert len(transactions) == 1
        assert transactions[0].to_owner_id == BUYER_ID
        assert transactions[0].price_total == 250.0
        assert transactions[0].metadata["transferred"] is False
        assert transactions[0].metadata["transferPath"] == "recorded_only"

    def test_denied_update_uses_privileged_transfer(
        self, memory_store: InMemoryCreditStore
    ):
        memory_store.deny_updates = True
        admin = AdminMarketplaceService(memory_store.service_role_view())

        result = asyncio.run(
            make_service(memory_store, admin=admin).purchase_credit(1, BUYER_ID)
        )

        assert result.transferred is True
        assert result.transfer_path == TransferPath.PRIVILEGED
        assert result.credit.owner_id == BUYER_ID
        assert memory_store.credits[1].owner_id == BUYER_ID
        assert memory_store.credits[1].status == CreditStatus.OWNED

        transactions = memory_store.transactions_for(1)
        assert len(transactions) == 1
        assert transactions[0].metadata["transferPath"] == "privileged"

    def test_silently_filtered_update_is_treated_as_denied(
        self, memory_store: InMemoryCreditStore
    ):
        # Zero matched rows on a row that has not changed is access control,
        # not a competing buyer
        memory_store.filter_updates = True

        result = asyncio.run(make_service(memory_store).purchase_credit(1, BUYER_ID))

        assert result.transfer_path == TransferPath.RECORDED_ONLY
        assert result.transferred is False
        assert len(memory_store.transactions_for(1)) == 1

        admin = AdminMarketplaceService(memory_store.service_role_view())
        result = asyncio.run(
            make_service(memory_store, admin=admin).purchase_credit(1, BUYER_ID)
        )

        assert result.transfer_path == TransferPath.PRIVILEGED
        assert memory_store.credits[1].owner_id == BUYER_ID

    def test_denied_update_without_fallback_raises(
        self, memory_store: InMemoryCreditStore
    ):
        memory_store.deny_updates = True
        service = make_service(memory_store, allow_recorded_only=False)

        with pytest.raises(CreditTransferDeniedError) as exc_info:
            asyncio.run(service.purchase_credit(1, BUYER_ID))

        assert exc_info.value.status_code == 403
        assert memory_store.transactions == []

    def test_refused_privileged_transfer_degrades_to_recorded_only(
        self, memory_store: InMemoryCreditStore
    ):
        memory_store.deny_updates = True
        admin_store = memory_store.service_role_view()
        admin_store.deny_updates = True

        result = asyncio.run(
            make_service(
                memory_store, admin=AdminMarketplaceService(admin_store)
            ).purchase_credit(1, BUYER_ID)
        )

        assert result.transfer_path == TransferPath.RECORDED_ONLY
        assert memory_store.credits[1].owner_id == SELLER_ID

    def test_unavailable_privileged_transfer_propagates(
        self, memory_store: InMemoryCreditStore
    ):
        memory_store.deny_updates = True
        admin_store = memory_store.service_role_view()
        admin_store.unavailable = True

        with pytest.raises(StoreUnavailableError) as exc_info:
            asyncio.run(
                make_service(
                    memory_store, admin=AdminMarketplaceService(admin_store)
                ).purchase_credit(1, BUYER_ID)
            )

        assert exc_info.value.status_code == 503
        assert memory_store.transactions == []

    def test_failed_audit_write_is_reported(self, memory_store: InMemoryCreditStore):
        memory_store.fail_transaction_inserts = True

        result = asyncio.run(make_service(memory_store).purchase_credit(1, BUYER_ID))

        # The transfer stands even though the log entry is missing
        assert result.transferred is True
        assert result.audit_recorded is False
        assert result.transaction is None
        assert "could not be written" in result.message
        assert memory_store.credits[1].owner_id == BUYER_ID
        assert memory_store.transactions == []

    def test_slow_store_times_out(self, memory_store: InMemoryCreditStore):
        memory_store.delay = 0.2
        service = make_service(memory_store, timeout=0.01)

        with pytest.raises(StoreTimeoutError) as exc_info:
            asyncio.run(service.purchase_credit(1, BUYER_ID))

        assert isinstance(exc_info.value, StoreUnavailableError)
        assert exc_info.value.operation == "get_credit"
        assert exc_info.value.error_type == "timeout"
        assert memory_store.credits[1].owner_id == SELLER_ID


class TestRetireCredit:
    def test_retire_credit(self, memory_store: InMemoryCreditStore):
        result = asyncio.run(make_service(memory_store).retire_credit(1, SELLER_ID))

        assert result.credit.status == CreditStatus.RETIRED
        assert result.credit.metadata["retirementReason"] == DEFAULT_RETIREMENT_REASON
        assert result.credit.metadata["retirementDate"] == NOW.isoformat()
        assert result.audit_recorded is True
        assert result.message == "Successfully retired 10 kg H2 credits"

        transactions = memory_store.transactions_for(1)
        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.RETIRE
        assert transactions[0].from_owner_id == SELLER_ID
        assert transactions[0].to_owner_id is None
        assert transactions[0].price_total is None

    def test_retire_with_reason_keeps_existing_metadata(self):
        store = InMemoryCreditStore(
            [
                make_credit(
                    credit_id=1,
                    owner_id=BUYER_ID,
                    issuer_id=SELLER_ID,
                    status=CreditStatus.OWNED,
                    metadata={"productionMethod": "wind"},
                )
            ]
        )

        result = asyncio.run(
            make_service(store).retire_credit(1, BUYER_ID, "Scope 2 offset")
        )

        assert result.credit.metadata["retirementReason"] == "Scope 2 offset"
        assert result.credit.metadata["productionMethod"] == "wind"
        assert store.transactions_for(1)[0].metadata == {
            "retirementReason": "Scope 2 offset"
        }

    def test_retire_preconditions(self, memory_store: InMemoryCreditStore):
        service = make_service(memory_store)

        # Test case 1: unknown credit
        with pytest.raises(CreditNotFoundError):
            asyncio.run(service.retire_credit(99, SELLER_ID))

        # Test case 2: not the holder
        with pytest.raises(CreditOwnershipError) as exc_info:
            asyncio.run(service.retire_credit(1, BUYER_ID))
        assert exc_info.value.status_code == 403

        # Test case 3: retiring twice
        asyncio.run(service.retire_credit(1, SELLER_ID))
        with pytest.raises(CreditAlreadyRetiredError):
            asyncio.run(service.retire_credit(1, SELLER_ID))

        # Test case 4: ownership is checked before the retired status
        with pytest.raises(CreditOwnershipError):
            asyncio.run(service.retire_credit(1, BUYER_ID))

        assert len(memory_store.transactions_for(1)) == 1

    def test_retire_racing_a_concurrent_retirement(
        self, memory_store: InMemoryCreditStore
    ):
        def concurrent_retirement(store: InMemoryCreditStore) -> None:
            store.credits[1] = store.credits[1].model_copy(
                update={"status": CreditStatus.RETIRED}
            )

        memory_store.before_update = concurrent_retirement

        with pytest.raises(CreditAlreadyRetiredError):
            asyncio.run(make_service(memory_store).retire_credit(1, SELLER_ID))
        assert memory_store.transactions == []

    def test_retire_racing_a_sale(self, memory_store: InMemoryCreditStore):
        def concurrent_sale(store: InMemoryCreditStore) -> None:
            store.credits[1] = store.credits[1].model_copy(
                update={"owner_id": BUYER_ID, "status": CreditStatus.OWNED}
            )

        memory_store.before_update = concurrent_sale

        with pytest.raises(CreditOwnershipError):
            asyncio.run(make_service(memory_store).retire_credit(1, SELLER_ID))
        assert memory_store.credits[1].status == CreditStatus.OWNED


class TestMarketplaceQueries:
    @pytest.fixture()
    def market_store(self) -> InMemoryCreditStore:
        return InMemoryCreditStore(
            [
                make_credit(credit_id=1, owner_id=SELLER_ID, volume=10),
                make_credit(
                    credit_id=2, owner_id=SELLER_ID, volume=10, production_method="wind"
                ),
                make_credit(
                    credit_id=3,
                    owner_id=BUYER_ID,
                    issuer_id=SELLER_ID,
                    volume=5,
                    status=CreditStatus.RETIRED,
                ),
                make_credit(
                    credit_id=4,
                    owner_id=BUYER_ID,
                    issuer_id=SELLER_ID,
                    volume=7,
                    status=CreditStatus.OWNED,
                ),
            ]
        )

    def test_get_credit_price(self, market_store: InMemoryCreditStore):
        service = make_service(market_store)

        assert asyncio.run(service.get_credit_price(2)).unit_price == 26.5

        with pytest.raises(CreditNotFoundError):
            asyncio.run(service.get_credit_price(99))

    def test_marketplace_lists_issued_credits_newest_first(
        self, market_store: InMemoryCreditStore
    ):
        listings = asyncio.run(make_service(market_store).get_marketplace_credits())

        assert [listing.credit.id for listing in listings] == [2, 1]
        assert [listing.pricing.unit_price for listing in listings] == [26.5, 25.0]

        listings = asyncio.run(make_service(market_store).get_marketplace_credits(1))
        assert len(listings) == 1

    def test_owned_credits_by_last_activity(self, market_store: InMemoryCreditStore):
        market_store.credits[3] = market_store.credits[3].model_copy(
            update={"updated_at": NOW - datetime.timedelta(days=1)}
        )
        market_store.credits[4] = market_store.credits[4].model_copy(
            update={"updated_at": NOW - datetime.timedelta(days=2)}
        )

        owned = asyncio.run(make_service(market_store).get_user_owned_credits(BUYER_ID))

        assert [credit.id for credit in owned] == [3, 4]
        assert asyncio.run(
            make_service(market_store).get_user_owned_credits(SELLER_ID)
        ) == []

    def test_market_stats(self, market_store: InMemoryCreditStore):
        stats = asyncio.run(make_service(market_store).get_market_stats())

        assert stats.total_credits == 4
        assert stats.total_volume == 32.0
        assert stats.available_volume == 20.0
        assert stats.retired_volume == 5.0
        # Mean of the issued unit prices 25.00 and 26.50
        assert stats.average_price == 25.75
        assert stats.market_value == 515.0
        assert stats.recent_transactions == []

    def test_market_stats_include_recent_transactions(
        self, market_store: InMemoryCreditStore
    ):
        service = make_service(market_store)
        asyncio.run(service.purchase_credit(1, BUYER_ID))

        stats = asyncio.run(service.get_market_stats())

        assert stats.available_volume == 10.0
        assert stats.average_price == 26.5
        assert len(stats.recent_transactions) == 1
        assert stats.recent_transactions[0].credit_id == 1

    def test_market_stats_for_empty_market(self):
        stats = asyncio.run(make_service(InMemoryCreditStore()).get_market_stats())

        assert stats.total_credits == 0
        assert stats.available_volume == 0.0
        assert stats.average_price == 25.0
        assert stats.market_value == 0.0

    def test_market_stats_when_store_unavailable(
        self, market_store: InMemoryCreditStore
    ):
        market_store.unavailable = True

        stats = asyncio.run(make_service(market_store).get_market_stats())

        assert stats.total_credits == 0
        assert stats.total_volume == 0.0
        assert stats.average_price == 25.0
        assert stats.recent_transactions == []
