from sqlmodel import Field

from h2_registry.authentication.schemas import TokenRecordsBase


class TokenRecords(TokenRecordsBase, table=True):
    __tablename__: str = "token_record"  # type: ignore

    id: int | None = Field(default=None, primary_key=True)
