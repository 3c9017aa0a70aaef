import datetime
from typing import Any, Callable, Generator

import pytest
from dotenv import load_dotenv
from sqlmodel import Session
from starlette.testclient import TestClient

from h2_registry.authentication.services import get_password_hash
from h2_registry.core.container import ServiceContainer
from h2_registry.core.database.db import DButils
from h2_registry.core.dependencies import get_container
from h2_registry.core.models.base import CreditStatus, UserRoles
from h2_registry.credit.models import Credit
from h2_registry.credit.schemas import CreditRead
from h2_registry.facility.models import ProductionFacility
from h2_registry.main import app
from h2_registry.settings import Settings
from h2_registry.tests.fakes import NOW, InMemoryCreditStore, fixed_clock, make_credit
from h2_registry.user.models import User

load_dotenv()


@pytest.fixture(scope="session")
def password_hash() -> str:
    return get_password_hash("password")


@pytest.fixture()
def db_utils() -> Generator[DButils, None, None]:
    """An in-memory sqlite database with every table created, one per test."""
    utils = DButils(test=True)
    utils.create_db_and_tables()
    yield utils
    utils.engine.dispose()


@pytest.fixture()
def session(db_utils: DButils) -> Generator[Session, None, None]:
    with db_utils.get_session() as session:
        yield session


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        ENVIRONMENT="TEST",
        SERVICE_ROLE_KEY=None,
        ROW_LEVEL_SECURITY_ENABLED=True,
        ALLOW_MARKETPLACE_CLAIMS=False,
        ALLOW_RECORDED_ONLY_PURCHASES=True,
    )


@pytest.fixture()
def container(db_utils: DButils, test_settings: Settings) -> ServiceContainer:
    return ServiceContainer(
        db_utils=db_utils, esdb_client=None, config=test_settings, clock=fixed_clock
    )


@pytest.fixture()
def api_client(container: ServiceContainer) -> Generator[TestClient, None, None]:
    """API Client for testing routes"""

    def get_container_override():
        return container

    app.dependency_overrides[get_container] = get_container_override

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture()
def user_factory(session: Session, password_hash: str) -> Any:
    """Factory function to create users with different roles."""

    def _create_user(role: UserRoles, name_suffix: str = "") -> User:
        unique_suffix = f"_{name_suffix}" if name_suffix else f"_{str(role)}"

        user = User.model_validate(
            {
                "name": f"fake_user{unique_suffix}",
                "email": f"test_user{unique_suffix}@fakecorp.com",
                "hashed_password": password_hash,
                "role": role,
            }
        )
        session.add(user)
        session.commit()
        session.refresh(user)

        return user

    return _create_user


@pytest.fixture()
def auth_factory(api_client: TestClient) -> Callable[[User], dict[str, str]]:
    """Factory function to create bearer auth headers for users."""

    def _create_headers(user: User) -> dict[str, str]:
        response = api_client.post(
            "/auth/login",
            data={"username": user.email, "password": "password"},
        )
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _create_headers


@pytest.fixture()
def fake_db_admin_user(user_factory) -> User:
    return user_factory(UserRoles.ADMIN, "admin")


@pytest.fixture()
def fake_db_producer(user_factory) -> User:
    return user_factory(UserRoles.PRODUCER, "producer")


@pytest.fixture()
def fake_db_buyer(user_factory) -> User:
    return user_factory(UserRoles.BUYER, "buyer")


@pytest.fixture()
def fake_db_second_buyer(user_factory) -> User:
    return user_factory(UserRoles.BUYER, "second_buyer")


@pytest.fixture()
def fake_db_auditor(user_factory) -> User:
    return user_factory(UserRoles.AUDITOR, "auditor")


@pytest.fixture()
def fake_db_facility(session: Session, fake_db_producer: User) -> ProductionFacility:
    facility = ProductionFacility.model_validate(
        {
            "facility_name": "North Sea Electrolyser",
            "location": "Esbjerg, Denmark",
            "capacity_mw": 2.0,
            "renewable_sources": ["wind"],
            "operational_since": datetime.datetime(2023, 1, 1, tzinfo=datetime.timezone.utc),
            "owner_id": fake_db_producer.id,
        }
    )
    session.add(facility)
    session.commit()
    session.refresh(facility)
    return facility


@pytest.fixture()
def credit_factory(session: Session, fake_db_producer: User) -> Any:
    """Factory function to insert credits directly, bypassing issuance."""

    def _create_credit(
        volume: float = 10.0,
        status: CreditStatus = CreditStatus.ISSUED,
        owner: User | None = None,
        age_days: float = 10,
        production_method: str | None = None,
        blockchain_reference: str | None = None,
        metadata: dict | None = None,
    ) -> CreditRead:
        holder = owner or fake_db_producer
        credit = Credit.model_validate(
            {
                "owner_id": holder.id,
                "issuer_id": fake_db_producer.id,
                "volume": volume,
                "status": status,
                "production_method": production_method,
                "blockchain_reference": blockchain_reference,
                "credit_metadata": metadata or {},
                "created_at": NOW - datetime.timedelta(days=age_days),
            }
        )
        session.add(credit)
        session.commit()
        session.refresh(credit)

        return CreditRead.model_validate(credit.model_dump())

    return _create_credit


@pytest.fixture()
def memory_store() -> InMemoryCreditStore:
    """An in-memory store holding one issued credit (id 1) owned by user 1."""
    return InMemoryCreditStore([make_credit(credit_id=1, owner_id=1, volume=10.0)])
