from typing import Any, Generator
from urllib.parse import urlparse

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from h2_registry.credit import models as credit_models
from h2_registry.facility import models as facility_models
from h2_registry.logging_config import logger
from h2_registry.settings import settings
from h2_registry.user import models as user_models

# Import every table module so SQLModel.metadata knows the full schema
__all__ = [
    "SQLModel",
    "user_models",
    "facility_models",
    "credit_models",
]


class DButils:
    def __init__(
        self,
        connection_str: str | None = None,
        db_test_fp: str | None = None,
        test: bool = False,
    ):
        self._db_test_fp = db_test_fp

        if test:
            # An in-memory sqlite database shared across threads, the store runs
            # its blocking session work in a threadpool
            self.connection_str = (
                f"sqlite:///{self._db_test_fp}" if self._db_test_fp else "sqlite://"
            )
            self.engine = create_engine(
                self.connection_str,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
            return

        self.connection_str = connection_str or settings.database_url

        parsed = urlparse(self.connection_str)
        redacted = self.connection_str
        if parsed.password:
            redacted = self.connection_str.replace(parsed.password, "********")
        logger.info(f"Database connection initialised: {redacted}")

        self.engine = create_engine(
            self.connection_str,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            echo=False,
        )

    def yield_session(self) -> Generator[Any, Any, Any]:
        with Session(self.engine) as session:
            yield session

    def get_session(self) -> Session:
        return Session(self.engine)

    def create_db_and_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)
