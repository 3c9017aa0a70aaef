import re

from pydantic import BaseModel, field_validator, model_serializer
from sqlmodel import Field, SQLModel

from h2_registry.core.models.base import UserRoles


class UserBase(SQLModel):
    name: str
    email: str = Field(
        nullable=False,
        unique=True,
        index=True,
        description="The email address of the User, used for authentication.",
    )
    role: UserRoles = Field(
        description="""The role of the User within the registry: 'admin', 'producer', 'buyer'
                       or 'auditor'. The role determines the set of capabilities granted to the
                       User, such as issuing, purchasing, transferring or retiring credits.""",
    )
    hashed_password: str | None = Field(
        default=None,
        description="The hashed password of the user.",
    )
    organisation: str | None = Field(
        default=None,
        description="The organisation to which the user is registered.",
    )
    is_deleted: bool = Field(default=False)

    @field_validator("email")
    def validate_email(cls, v):
        if not re.match(r"[^@]+@[^@]+\.[^@]+", v):
            raise ValueError("Please enter a valid email address.")
        return v


class UserCreate(UserBase):
    password: str


class UserUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    organisation: str | None = None
    hashed_password: str | None = None
    role: UserRoles | None = None


class UserRead(BaseModel):
    id: int
    name: str
    email: str
    role: UserRoles
    organisation: str | None = None

    @model_serializer(mode="plain")
    def serializer(self, info, *, many=False):
        return {
            "role": str(self.role),
            "name": self.name,
            "email": self.email,
            "id": self.id,
            "organisation": self.organisation,
        }
