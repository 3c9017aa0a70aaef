import datetime
from typing import Callable

from esdbclient import EventStoreDBClient

from h2_registry.core.database.db import DButils
from h2_registry.core.models.base import utc_datetime_now
from h2_registry.credit.services import CreditService
from h2_registry.credit.store import RowLevelPolicy, SQLCreditStore
from h2_registry.logging_config import logger
from h2_registry.marketplace.admin import AdminMarketplaceService
from h2_registry.marketplace.pricing import PricingCalculator
from h2_registry.marketplace.services import MarketplaceService
from h2_registry.settings import Settings, settings


class ServiceContainer:
    """Process wide collaborators, built once at application startup.

    Request handlers obtain stores and services from here through dependency
    functions, each bound to the user acting in that request.
    """

    def __init__(
        self,
        db_utils: DButils,
        esdb_client: EventStoreDBClient | None = None,
        config: Settings = settings,
        clock: Callable[[], datetime.datetime] = utc_datetime_now,
    ):
        self.db = db_utils
        self.esdb_client = esdb_client
        self.config = config
        self.clock = clock
        self.policy = RowLevelPolicy(
            enabled=config.ROW_LEVEL_SECURITY_ENABLED,
            allow_marketplace_claims=config.ALLOW_MARKETPLACE_CLAIMS,
        )
        self.pricing = PricingCalculator(base_price=config.CREDIT_BASE_PRICE, clock=clock)

        if config.SERVICE_ROLE_KEY:
            self.admin_service: AdminMarketplaceService | None = AdminMarketplaceService(
                self.store_for(None)
            )
        else:
            logger.info("SERVICE_ROLE_KEY not set, privileged credit transfers are disabled")
            self.admin_service = None

    def store_for(self, actor_id: int | None) -> SQLCreditStore:
        """A credit store acting as ``actor_id``, or as the service role for None."""
        return SQLCreditStore(
            session_factory=self.db.get_session,
            actor_id=actor_id,
            policy=self.policy,
            esdb_client=self.esdb_client,
        )

    def credit_service(self, actor_id: int) -> CreditService:
        return CreditService(
            store=self.store_for(actor_id),
            timeout=self.config.STORE_TIMEOUT_SECONDS,
            clock=self.clock,
        )

    def marketplace_service(self, actor_id: int) -> MarketplaceService:
        return MarketplaceService(
            store=self.store_for(actor_id),
            admin=self.admin_service,
            pricing=self.pricing,
            timeout=self.config.STORE_TIMEOUT_SECONDS,
            allow_recorded_only=self.config.ALLOW_RECORDED_ONLY_PURCHASES,
            clock=self.clock,
        )
