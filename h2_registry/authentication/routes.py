import datetime

from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from h2_registry.authentication import services
from h2_registry.authentication.models import TokenRecords
from h2_registry.authentication.schemas import Token
from h2_registry.core.dependencies import get_esdb_client, get_session
from h2_registry.logging_config import logger
from h2_registry.settings import settings as st

router = APIRouter(tags=["Authentication"])


@router.post("/login", response_model=Token)
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(get_session),
    esdb_client: EventStoreDBClient | None = Depends(get_esdb_client),
):
    """Login for access token.

    OAuth2PasswordRequestForm requires the syntax "username" even though in practice
    we are using the user's email address.

    Raises:
        HTTPException: If invalid credentials are provided.
    """
    user = services.authenticate_user(form_data.username, form_data.password, session)

    access_token_expires = datetime.timedelta(minutes=st.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = services.create_access_token(
        data={"sub": user.email}, expires_delta=access_token_expires
    )

    token_record = TokenRecords(
        email=user.email,
        token=access_token,
        expires=datetime.datetime.now(datetime.timezone.utc) + access_token_expires,
    )
    try:
        TokenRecords.create(token_record, session, esdb_client)
    except SQLAlchemyError as e:
        # The token is valid regardless of whether the audit record was stored
        logger.warning(f"Could not store token record for {user.email}: {str(e)}")

    return {"access_token": access_token, "token_type": "bearer", "user_id": user.id}
