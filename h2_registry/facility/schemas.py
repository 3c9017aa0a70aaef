import datetime

import pydantic
from pydantic import BaseModel
from sqlmodel import JSON, Column, Field

from h2_registry import utils


class FacilityBase(utils.ActiveRecord):
    facility_name: str = Field(
        description="The name assigned to the production facility by its operator.",
        min_length=1,
        max_length=255,
    )
    location: str = Field(
        description="The location of the facility, rendered as an address or a lon/lat pair.",
        min_length=1,
        max_length=255,
    )
    capacity_mw: float = Field(
        description="The electrolyser capacity of the facility in MW.",
        gt=0,
    )
    renewable_sources: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON),
        description="The renewable electricity sources powering the facility, e.g. solar or wind.",
    )
    operational_since: datetime.datetime | None = Field(
        default=None,
        description="The date that the facility became operational.",
    )


class FacilityCreate(BaseModel):
    facility_name: str
    location: str
    capacity_mw: float = pydantic.Field(gt=0)
    renewable_sources: list[str] = []
    operational_since: datetime.datetime | None = None


class FacilityRead(FacilityBase):
    id: int
    owner_id: int
