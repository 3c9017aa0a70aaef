import datetime

from h2_registry.core.models.base import utc_datetime_now


def create_external_reference(
    prefix: str, now: datetime.datetime | None = None
) -> str:
    """
    Build a synthetic external reference for a transaction recorded without an
    upstream reference, e.g. ``purchase_1718035200000``.

    Args:
        prefix (str): The transaction kind, e.g. "purchase" or "retire"
        now (datetime.datetime): The timestamp to encode, defaults to the current UTC time

    Returns:
        str: The prefix joined to the epoch time in milliseconds
    """
    moment = now or utc_datetime_now()
    return f"{prefix}_{int(moment.timestamp() * 1000)}"
