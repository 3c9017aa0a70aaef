from esdbclient import EventStoreDBClient
from sqlmodel import Session, select
from sqlmodel.sql.expression import SelectOfScalar

from h2_registry.authentication.services import get_password_hash
from h2_registry.user.models import User
from h2_registry.user.schemas import UserCreate


def get_user_by_email(email: str, session: Session) -> User | None:
    stmt: SelectOfScalar = select(User).where(User.email == email)
    return session.exec(stmt).first()


def create_user(
    user_create: UserCreate,
    session: Session,
    esdb_client: EventStoreDBClient | None = None,
) -> User:
    """Hash the supplied password and persist the new User."""
    user_create.hashed_password = get_password_hash(user_create.password)
    users = User.create(user_create, session, esdb_client)
    return users[0]  # type: ignore
