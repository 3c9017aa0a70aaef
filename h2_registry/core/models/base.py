import datetime
import enum
from enum import Enum
from functools import partial

from pydantic import BaseModel

utc_datetime_now = partial(datetime.datetime.now, datetime.timezone.utc)


class UserRoles(int, Enum):
    ADMIN = 4
    PRODUCER = 3
    BUYER = 2
    AUDITOR = 1

    def __str__(self):
        return self.name.lower()


class Capability(str, Enum):
    ISSUE = "issue"
    PURCHASE = "purchase"
    TRANSFER = "transfer"
    RETIRE = "retire"
    AUDIT = "audit"
    MANAGE_FACILITIES = "manage_facilities"
    MANAGE_USERS = "manage_users"


# Roles are not hierarchical: a producer sells and retires, a buyer purchases
# and retires, an auditor only reads the full ledger.
ROLE_CAPABILITIES: dict[UserRoles, frozenset[Capability]] = {
    UserRoles.ADMIN: frozenset(Capability),
    UserRoles.PRODUCER: frozenset(
        {
            Capability.ISSUE,
            Capability.TRANSFER,
            Capability.RETIRE,
            Capability.MANAGE_FACILITIES,
        }
    ),
    UserRoles.BUYER: frozenset(
        {Capability.PURCHASE, Capability.TRANSFER, Capability.RETIRE}
    ),
    UserRoles.AUDITOR: frozenset({Capability.AUDIT}),
}


class CreditStatus(str, Enum):
    ISSUED = "issued"
    OWNED = "owned"
    RETIRED = "retired"


# Forward-only lifecycle, retired is terminal
ALLOWED_STATUS_TRANSITIONS: dict[CreditStatus, frozenset[CreditStatus]] = {
    CreditStatus.ISSUED: frozenset({CreditStatus.OWNED, CreditStatus.RETIRED}),
    CreditStatus.OWNED: frozenset({CreditStatus.OWNED, CreditStatus.RETIRED}),
    CreditStatus.RETIRED: frozenset(),
}


class TransactionType(str, Enum):
    ISSUE = "issue"
    TRANSFER = "transfer"
    RETIRE = "retire"


class ProductionMethod(str, enum.Enum):
    solar = "solar"
    wind = "wind"
    hydro = "hydro"
    biomass = "biomass"
    geothermal = "geothermal"
    other = "other"

    @classmethod
    def values(cls):
        return [e.value for e in cls]


class EventTypes(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class logging_levels(str, enum.Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingLevelRequest(BaseModel):
    level: logging_levels
