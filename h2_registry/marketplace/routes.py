from fastapi import APIRouter, Depends, Query

from h2_registry.authentication.services import get_current_user
from h2_registry.core.container import ServiceContainer
from h2_registry.core.dependencies import get_container
from h2_registry.core.models.base import Capability
from h2_registry.credit.schemas import CreditRead
from h2_registry.marketplace.pricing import PricingResult
from h2_registry.marketplace.schemas import (
    MarketplaceCredit,
    MarketStats,
    PurchaseResult,
    RetireRequest,
    RetireResult,
)
from h2_registry.marketplace.services import MarketplaceService
from h2_registry.user.models import User
from h2_registry.user.validation import validate_user_capability

router = APIRouter(tags=["Marketplace"])


def get_marketplace_service(
    current_user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> MarketplaceService:
    return container.marketplace_service(current_user.id)  # type: ignore


@router.get("/credits", response_model=list[MarketplaceCredit])
async def list_marketplace_credits(
    limit: int | None = Query(default=None, ge=1, le=500),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    """Credits currently open for purchase, newest first, with live pricing."""
    return await marketplace.get_marketplace_credits(limit)


@router.get("/credits/{credit_id}/price", response_model=PricingResult)
async def read_credit_price(
    credit_id: int,
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    return await marketplace.get_credit_price(credit_id)


@router.post("/credits/{credit_id}/purchase", response_model=PurchaseResult)
async def purchase_credit(
    credit_id: int,
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    """Purchase an issued credit at its current price.

    The response reports whether ownership was actually transferred. When
    access control prevents the transfer the sale is still recorded, with
    `transferred` set to false.
    """
    validate_user_capability(current_user, Capability.PURCHASE)

    return await marketplace.purchase_credit(credit_id, current_user.id)  # type: ignore


@router.post("/credits/{credit_id}/retire", response_model=RetireResult)
async def retire_credit(
    credit_id: int,
    retire_request: RetireRequest | None = None,
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    validate_user_capability(current_user, Capability.RETIRE)

    reason = retire_request.reason if retire_request else None
    return await marketplace.retire_credit(credit_id, current_user.id, reason)  # type: ignore


@router.get("/owned", response_model=list[CreditRead])
async def read_owned_credits(
    current_user: User = Depends(get_current_user),
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    return await marketplace.get_user_owned_credits(current_user.id)  # type: ignore


@router.get("/stats", response_model=MarketStats)
async def read_market_stats(
    marketplace: MarketplaceService = Depends(get_marketplace_service),
):
    return await marketplace.get_market_stats()
