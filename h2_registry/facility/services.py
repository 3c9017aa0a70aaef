from esdbclient import EventStoreDBClient
from sqlmodel import Session, select
from sqlmodel.sql.expression import SelectOfScalar

from h2_registry.facility.models import ProductionFacility
from h2_registry.facility.schemas import FacilityCreate
from h2_registry.settings import settings


def get_facilities_by_owner_id(
    owner_id: int, session: Session
) -> list[ProductionFacility]:
    stmt: SelectOfScalar = select(ProductionFacility).where(
        ProductionFacility.owner_id == owner_id,
        ~ProductionFacility.is_deleted,
    )
    facilities = session.exec(stmt).all()

    return list(facilities)


def get_facility_by_id(
    facility_id: int, session: Session
) -> ProductionFacility | None:
    stmt: SelectOfScalar = select(ProductionFacility).where(
        ProductionFacility.id == facility_id,
        ~ProductionFacility.is_deleted,
    )
    return session.exec(stmt).first()


def create_facility(
    facility_create: FacilityCreate,
    owner_id: int,
    session: Session,
    esdb_client: EventStoreDBClient | None = None,
) -> ProductionFacility:
    facility_dict = facility_create.model_dump()
    facility_dict["owner_id"] = owner_id
    facilities = ProductionFacility.create(facility_dict, session, esdb_client)
    return facilities[0]  # type: ignore


def facility_mw_capacity_to_kg_max(
    capacity_mw: float, kg_per_mw: float = settings.FACILITY_DAILY_KG_PER_MW
) -> float:
    """Take the facility electrolyser capacity in MW and calculate the maximum
    kilograms of hydrogen it can produce in a day."""
    return capacity_mw * kg_per_mw
