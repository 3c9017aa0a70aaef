import datetime

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlmodel import Session

from h2_registry.authentication.services import get_current_user
from h2_registry.core.container import ServiceContainer
from h2_registry.core.dependencies import get_container, get_session
from h2_registry.core.exceptions import CreditValidationError
from h2_registry.core.models.base import Capability, CreditStatus
from h2_registry.credit.schemas import (
    BulkImportResult,
    CreditIssue,
    CreditQuery,
    CreditRead,
    CreditTransferRequest,
    CreditTransferResult,
    TransactionRead,
)
from h2_registry.credit.services import CreditService
from h2_registry.user.models import User
from h2_registry.user.validation import validate_user_capability

# Router initialisation
router = APIRouter(tags=["Credits"])


def get_credit_service(
    current_user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> CreditService:
    return container.credit_service(current_user.id)  # type: ignore


@router.post("/issue", response_model=CreditRead)
async def issue_credit(
    credit_issue: CreditIssue,
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
    session: Session = Depends(get_session),
):
    """Issue a new credit to the current producer. The volume is validated
    against the daily capacity of the referenced production facility."""
    validate_user_capability(current_user, Capability.ISSUE)

    return await credit_service.issue_credit(current_user, credit_issue, session)


@router.post("/import", response_model=BulkImportResult)
async def import_credits(
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
    session: Session = Depends(get_session),
):
    """Issue credits in bulk from a CSV or JSON file, one credit per row."""
    validate_user_capability(current_user, Capability.ISSUE)

    raw_content = await file.read()
    try:
        content = raw_content.decode("utf-8")
    except UnicodeDecodeError:
        raise CreditValidationError("Import file must be UTF-8 encoded")

    return await credit_service.import_credits(
        current_user, file.filename, content, session
    )


@router.get("/search", response_model=list[CreditRead])
async def search_credits(
    status: list[CreditStatus] | None = Query(default=None),
    production_method: list[str] | None = Query(default=None),
    renewable_source: str | None = None,
    owner_id: int | None = None,
    min_volume: float | None = None,
    max_volume: float | None = None,
    created_from: datetime.datetime | None = None,
    created_to: datetime.datetime | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
):
    """Search credits. Users without the audit capability only see their own
    holdings and credits open for purchase."""
    query = CreditQuery(
        statuses=status,
        production_methods=production_method,
        renewable_source=renewable_source,
        owner_id=owner_id,
        min_volume=min_volume,
        max_volume=max_volume,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
    )
    return await credit_service.search_credits(query, viewer=current_user)


@router.get("/{credit_id}", response_model=CreditRead)
async def read_credit(
    credit_id: int,
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
):
    return await credit_service.get_credit(credit_id, viewer=current_user)


@router.get("/{credit_id}/transactions", response_model=list[TransactionRead])
async def read_credit_transactions(
    credit_id: int,
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
):
    return await credit_service.get_credit_transactions(credit_id, viewer=current_user)


@router.post("/{credit_id}/transfer", response_model=CreditTransferResult)
async def transfer_credit(
    credit_id: int,
    transfer_request: CreditTransferRequest,
    current_user: User = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service),
    session: Session = Depends(get_session),
):
    validate_user_capability(current_user, Capability.TRANSFER)
    # Raises a 404 for an unknown recipient
    User.by_id(transfer_request.to_owner_id, session)

    return await credit_service.transfer_credit(
        credit_id, current_user.id, transfer_request.to_owner_id  # type: ignore
    )
