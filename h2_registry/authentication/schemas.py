import datetime

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

from h2_registry import utils


class Token(SQLModel):
    access_token: str
    token_type: str
    user_id: int


class TokenRecordsBase(utils.ActiveRecord):
    email: str = Field(nullable=False)
    token: str
    expires: datetime.datetime
