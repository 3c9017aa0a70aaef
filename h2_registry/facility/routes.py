from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from sqlmodel import Session

from h2_registry.authentication.services import get_current_user
from h2_registry.core.dependencies import get_esdb_client, get_session
from h2_registry.core.models.base import Capability
from h2_registry.facility import services
from h2_registry.facility.schemas import FacilityCreate, FacilityRead
from h2_registry.user.models import User
from h2_registry.user.validation import validate_user_capability

router = APIRouter(tags=["Facilities"])


@router.post("/create", response_model=FacilityRead)
def create_facility(
    facility_create: FacilityCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    esdb_client: EventStoreDBClient | None = Depends(get_esdb_client),
):
    """Register a production facility operated by the current producer."""
    validate_user_capability(current_user, Capability.MANAGE_FACILITIES)

    return services.create_facility(
        facility_create, current_user.id, session, esdb_client  # type: ignore
    )


@router.get("/mine", response_model=list[FacilityRead])
def read_my_facilities(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return services.get_facilities_by_owner_id(current_user.id, session)  # type: ignore
