from fastapi import HTTPException, status

from h2_registry.core.models.base import ROLE_CAPABILITIES, Capability
from h2_registry.user.models import User


def user_has_capability(user: User, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(user.role, frozenset())


def validate_user_capability(user: User, capability: Capability):
    """
    Validate that the user's role grants the capability required for the action.

    Args:
        user (User): The user to validate
        capability (Capability): The capability required to perform the action

    Raises:
        HTTPException: If the user action is rejected, return a 403 with the reason for rejection.
    """

    if not user_has_capability(user, capability):
        msg = f"User role '{user.role}' does not grant the '{capability.value}' capability"
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=msg)

