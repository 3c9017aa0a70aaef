from sqlmodel import Field

from h2_registry import utils
from h2_registry.user.schemas import UserBase


class User(UserBase, utils.ActiveRecord, table=True):
    # Postgres reserves the name "user" as a keyword, so we use "registry_user" instead
    __tablename__: str = "registry_user"  # type: ignore

    id: int | None = Field(default=None, primary_key=True)
