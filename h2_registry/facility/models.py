from sqlmodel import Field

from h2_registry.facility.schemas import FacilityBase

# Production facility - an electrolyser site operated by a single producer.
# Credits may reference the facility that produced the hydrogen, and the
# facility capacity bounds the volume of any single issuance.


class ProductionFacility(FacilityBase, table=True):
    __tablename__: str = "production_facility"  # type: ignore

    id: int | None = Field(
        default=None,
        description="A unique identifier for the facility.",
        primary_key=True,
    )
    owner_id: int = Field(
        foreign_key="registry_user.id",
        index=True,
        description="The producer that operates the facility and may issue credits against it.",
    )
    is_deleted: bool = Field(default=False)
