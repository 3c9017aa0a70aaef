from h2_registry.core.exceptions import (
    CreditLostRaceError,
    CreditNotAvailableError,
    CreditNotFoundError,
    StoreError,
)
from h2_registry.core.models.base import CreditStatus
from h2_registry.credit.schemas import CreditRead
from h2_registry.credit.store import CreditStore, UpdateOutcome
from h2_registry.logging_config import logger


class AdminMarketplaceService:
    """Ownership changes executed with the service role.

    The store handed to this service must not carry an acting user, so row
    level access control does not apply. It is only constructed when the
    service role key is configured for this process.
    """

    def __init__(self, store: CreditStore):
        self.store = store

    async def force_transfer_ownership(
        self, credit_id: int, new_owner_id: int
    ) -> CreditRead:
        """Move an issued credit to ``new_owner_id``.

        The update is still conditional on the owner and status read here, so
        a privileged transfer cannot overwrite a concurrent sale.

        Raises:
            CreditNotFoundError: If the credit does not exist.
            CreditNotAvailableError: If the credit is no longer issued.
            CreditLostRaceError: If the row changed between the read and the update.
            StoreError: If the store refused or failed the update.
        """
        credit = await self.store.get_credit(credit_id)
        if credit is None:
            raise CreditNotFoundError(credit_id)
        if credit.status != CreditStatus.ISSUED:
            raise CreditNotAvailableError(credit_id, credit.status.value)

        logger.info(
            f"Privileged transfer of credit {credit_id} from user {credit.owner_id} to user {new_owner_id}"
        )
        result = await self.store.update_credit_conditional(
            credit_id=credit_id,
            expected_owner_id=credit.owner_id,
            expected_status=CreditStatus.ISSUED,
            new_owner_id=new_owner_id,
            new_status=CreditStatus.OWNED,
        )

        if result.outcome == UpdateOutcome.UPDATED and result.credit is not None:
            return result.credit
        if result.outcome == UpdateOutcome.NO_ROWS_MATCHED:
            raise CreditLostRaceError(credit_id)

        raise StoreError(
            f"Privileged transfer of credit {credit_id} was refused: {result.reason}",
            details={"credit_id": credit_id},
        )
