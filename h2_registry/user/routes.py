from typing import Annotated

from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from h2_registry.authentication.services import get_current_user
from h2_registry.core.dependencies import get_esdb_client, get_session
from h2_registry.core.models.base import Capability, UserRoles
from h2_registry.user import services
from h2_registry.user.models import User
from h2_registry.user.schemas import UserCreate, UserRead, UserUpdate
from h2_registry.user.validation import validate_user_capability

# Router initialisation
router = APIRouter(tags=["Users"])

LoggedInUser = Annotated[User, Depends(get_current_user)]

### User ###


@router.post("/create", response_model=UserRead)
def create_user(
    user_create: UserCreate,
    current_user: LoggedInUser,
    session: Session = Depends(get_session),
    esdb_client: EventStoreDBClient | None = Depends(get_esdb_client),
):
    validate_user_capability(current_user, Capability.MANAGE_USERS)

    if services.get_user_by_email(user_create.email, session):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A user with email '{user_create.email}' already exists.",
        )

    return services.create_user(user_create, session, esdb_client)


@router.get("/me", response_model=UserRead)
def read_current_user(current_user: LoggedInUser) -> UserRead:
    return UserRead.model_validate(current_user.model_dump())


@router.get("/{user_id}", response_model=UserRead)
def read_user(
    user_id: int,
    current_user: LoggedInUser,
    session: Session = Depends(get_session),
):
    if current_user.id != user_id:
        validate_user_capability(current_user, Capability.AUDIT)

    user = User.by_id(user_id, session)
    return UserRead.model_validate(user.model_dump())


@router.post("/change_role/{user_id}", response_model=UserRead)
def change_role(
    user_id: int,
    role: UserRoles,
    current_user: LoggedInUser,
    session: Session = Depends(get_session),
    esdb_client: EventStoreDBClient | None = Depends(get_esdb_client),
):
    validate_user_capability(current_user, Capability.MANAGE_USERS)

    user = User.by_id(user_id, session)
    role_update = UserUpdate(role=role)
    return user.update(role_update, session, esdb_client)
