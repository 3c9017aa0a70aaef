import datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlmodel import Session, select

from h2_registry.core.dependencies import get_session
from h2_registry.settings import settings as st
from h2_registry.user.models import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/auth/login",
    auto_error=False,
)


JWT_CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid or expired JWT access-token",
    headers={"WWW-Authenticate": "Bearer"},
)


MISSING_CREDENTIALS_EXCEPTION = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Missing authentication credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verify that the provided password matches the hashed password."""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash the provided password."""
    return pwd_context.hash(password)


def get_user(email: str, session: Session) -> User | None:
    """Retrieve a User from the database matching the provided email address."""
    user = session.exec(
        select(User).where(User.email == email, ~User.is_deleted)
    ).first()

    return user


def authenticate_user(email: str, password: str, session: Session) -> User:
    """Authenticate a user by verifying their password.

    Args:
        email (str): The email address of the User to authenticate.
        password (str): The password to verify.
        session (Session): The database session to read from.

    Returns:
        user: The User object matching the provided email.

    Raises:
        HTTPException: If the user does not exist return a 404, if the password
            is incorrect return a 401.

    """
    user = get_user(email, session)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User '{email}' not found.",
        )

    if not verify_password(password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Password for '{email}' is incorrect.",
        )
    return user


def create_access_token(
    data: dict, expires_delta: datetime.timedelta | None = None
) -> str:
    """Create an access token with the provided data and expiration.

    Args:
        data (dict): The data to encode in the token.
        expires_delta (datetime.timedelta): The time delta until the token expires.

    Returns:
        encoded_jwt: The encoded JWT token.

    """
    to_encode = data.copy()
    now = datetime.datetime.now(datetime.timezone.utc)
    expire = now + (expires_delta or datetime.timedelta(minutes=15))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, st.JWT_SECRET_KEY, algorithm=st.JWT_ALGORITHM)
    return encoded_jwt


async def get_current_user(
    jwt_token: str | None = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Return the user identified by the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid, expired or names
            an unknown user.
    """
    if not jwt_token:
        raise MISSING_CREDENTIALS_EXCEPTION

    try:
        payload = jwt.decode(
            jwt_token,
            st.JWT_SECRET_KEY,
            algorithms=[st.JWT_ALGORITHM],
        )
    except JWTError:
        raise JWT_CREDENTIALS_EXCEPTION

    email: str | None = payload.get("sub")
    if email and (user := get_user(email, session)):
        return user

    raise JWT_CREDENTIALS_EXCEPTION

