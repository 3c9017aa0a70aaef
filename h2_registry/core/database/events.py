import datetime
import json
from typing import Any

from esdbclient import EventStoreDBClient, NewEvent, StreamState

from h2_registry.core.models.base import EventTypes
from h2_registry.logging_config import logger
from h2_registry.settings import settings

EVENT_STREAM_NAME = "events"


def get_esdb_client() -> EventStoreDBClient | None:
    """Return an EventStoreDB client, or None when no event store is configured."""
    if not settings.ESDB_CONNECTION_STRING:
        return None

    return EventStoreDBClient(uri=settings.ESDB_CONNECTION_STRING)


def _build_event(
    entity_id: int | None,
    entity_name: str,
    event_type: EventTypes,
    attributes_before: dict[str, Any] | None = None,
    attributes_after: dict[str, Any] | None = None,
) -> NewEvent:
    payload = {
        "entity_id": entity_id,
        "entity_name": entity_name,
        "attributes_before": attributes_before,
        "attributes_after": attributes_after,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    return NewEvent(
        type=event_type.value,
        data=json.dumps(payload, default=str).encode(),
        content_type="application/json",
    )


def create_event(
    entity_id: int | None,
    entity_name: str,
    event_type: EventTypes,
    esdb_client: EventStoreDBClient | None,
    attributes_before: dict[str, Any] | None = None,
    attributes_after: dict[str, Any] | None = None,
) -> None:
    if esdb_client is None:
        return

    event = _build_event(
        entity_id, entity_name, event_type, attributes_before, attributes_after
    )
    esdb_client.append_to_stream(
        EVENT_STREAM_NAME, current_version=StreamState.ANY, events=[event]
    )
    logger.debug(f"{event_type.value} event recorded for {entity_name} {entity_id}")


def batch_create_events(
    entity_ids: list[int | None],
    entity_names: list[str],
    event_type: EventTypes,
    esdb_client: EventStoreDBClient | None,
) -> None:
    if esdb_client is None:
        return

    events = [
        _build_event(entity_id, entity_name, event_type)
        for entity_id, entity_name in zip(entity_ids, entity_names)
    ]
    esdb_client.append_to_stream(
        EVENT_STREAM_NAME, current_version=StreamState.ANY, events=events
    )
