from typing import Generator

from esdbclient import EventStoreDBClient
from fastapi import Depends, Request
from sqlmodel import Session

from h2_registry.core.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_session(
    container: ServiceContainer = Depends(get_container),
) -> Generator[Session, None, None]:
    yield from container.db.yield_session()


def get_esdb_client(
    container: ServiceContainer = Depends(get_container),
) -> EventStoreDBClient | None:
    return container.esdb_client
