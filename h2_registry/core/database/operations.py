from esdbclient import EventStoreDBClient
from pydantic import BaseModel
from sqlmodel import Session, SQLModel

from h2_registry.core.database.events import batch_create_events, create_event
from h2_registry.core.models.base import EventTypes
from h2_registry.logging_config import logger


def write_to_database(
    entities: list[SQLModel] | SQLModel,
    session: Session,
    esdb_client: EventStoreDBClient | None = None,
) -> list[SQLModel]:
    """Write the provided entities to the database, saving an Event entry for
    each entity when an event store is configured."""

    if not isinstance(entities, list):
        entities = [entities]

    try:
        session.add_all(entities)
        session.flush()

        for entity in entities:
            session.refresh(entity)

    except Exception as e:
        logger.error(
            f"Error during commit to DB during create: {str(e)}, session ID {id(session)}"
        )
        session.rollback()
        raise e

    session.commit()

    for entity in entities:
        session.refresh(entity)

    batch_create_events(
        entity_ids=[getattr(entity, "id", None) for entity in entities],
        entity_names=[entity.__class__.__name__ for entity in entities],
        event_type=EventTypes.CREATE,
        esdb_client=esdb_client,
    )

    return entities


def update_database_entity(
    entity: SQLModel,
    update_entity: BaseModel,
    session: Session,
    esdb_client: EventStoreDBClient | None = None,
) -> SQLModel | None:
    """Update the entity with the provided Model Update instance."""

    update_data: dict = update_entity.model_dump(exclude_unset=True)
    before_data = {attr: getattr(entity, attr) for attr in update_data}

    try:
        entity.sqlmodel_update(update_data)

        session.add(entity)
        session.flush()

    except Exception as e:
        logger.error(f"Error during commit to DB during update: {str(e)}")
        session.rollback()
        raise e

    session.commit()
    session.refresh(entity)

    create_event(
        entity_id=getattr(entity, "id", None),
        entity_name=entity.__class__.__name__,
        event_type=EventTypes.UPDATE,
        esdb_client=esdb_client,
        attributes_before=before_data,
        attributes_after=update_data,
    )

    return entity
