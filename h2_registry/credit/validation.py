import datetime

import pytz
from fluent_validator import validate  # type: ignore
from sqlmodel import Session

from h2_registry.core.exceptions import CreditValidationError
from h2_registry.core.models.base import Capability, CreditStatus
from h2_registry.credit.schemas import CreditIssue, CreditQuery, CreditRead
from h2_registry.facility.models import ProductionFacility
from h2_registry.facility.services import (
    facility_mw_capacity_to_kg_max,
    get_facility_by_id,
)
from h2_registry.logging_config import logger
from h2_registry.user.models import User
from h2_registry.user.validation import user_has_capability


def validate_credit_issue(
    session: Session, credit_issue: CreditIssue, producer: User
) -> ProductionFacility | None:
    """
    Validate an issuance request against the facility it claims to originate from.

    The volume must be positive, and when a facility is given it must be
    operated by the producer and the volume must be below the facility's daily
    production limit.

    Args:
        session (Session): The database session to read from
        credit_issue (CreditIssue): The issuance request
        producer (User): The producer issuing the credit

    Returns:
        ProductionFacility | None: The validated facility, if one was given

    Raises:
        CreditValidationError: If any of the checks fail
    """
    try:
        validate(credit_issue.volume, identifier="volume").greater_than(0)
    except ValueError as e:
        raise CreditValidationError(str(e), details={"volume": credit_issue.volume})

    if credit_issue.facility_id is None:
        return None

    facility = get_facility_by_id(credit_issue.facility_id, session)
    if facility is None or facility.owner_id != producer.id:
        msg = f"Facility {credit_issue.facility_id} not found or not operated by user {producer.id}"
        logger.error(msg)
        raise CreditValidationError(
            msg, details={"facility_id": credit_issue.facility_id}
        )

    facility_max_kg = facility_mw_capacity_to_kg_max(facility.capacity_mw)
    try:
        validate(credit_issue.volume, identifier="volume").less_than(facility_max_kg)
    except ValueError as e:
        msg = (
            f"{e}: {credit_issue.volume} kg exceeds the daily limit of "
            f"{facility_max_kg} kg for facility {facility.id}"
        )
        logger.error(msg)
        raise CreditValidationError(
            msg,
            details={"volume": credit_issue.volume, "facility_max_kg": facility_max_kg},
        )

    return facility


def validate_query_date_range(query: CreditQuery) -> None:
    """Search date bounds must be timezone aware, in UTC and correctly ordered."""
    for bound in (query.created_from, query.created_to):
        if bound is None:
            continue
        if bound.tzinfo is None:
            raise CreditValidationError("Search dates must be timezone aware")
        if bound.tzinfo != pytz.UTC and bound.utcoffset() != datetime.timedelta(0):
            raise CreditValidationError("Search dates must be in UTC")

    if (
        query.created_from is not None
        and query.created_to is not None
        and query.created_from > query.created_to
    ):
        raise CreditValidationError("created_from must not be later than created_to")


def can_view_all_credits(user: User) -> bool:
    return user_has_capability(user, Capability.AUDIT)


def can_view_credit(user: User, credit: CreditRead) -> bool:
    """Auditors see every credit. Everyone else sees their own holdings and
    credits open for purchase."""
    return (
        can_view_all_credits(user)
        or credit.owner_id == user.id
        or credit.status == CreditStatus.ISSUED
    )
