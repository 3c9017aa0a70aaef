from fastapi import status


class RegistryError(Exception):
    """Base exception for all credit registry errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_type: str = "registry_error"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CreditNotFoundError(RegistryError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"

    def __init__(self, credit_id: int) -> None:
        super().__init__(
            f"Credit {credit_id} not found", details={"credit_id": credit_id}
        )
        self.credit_id = credit_id


class InvalidCreditStateError(RegistryError):
    """The credit is not in the status the operation requires."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "invalid_state"

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message, details={"current_status": current_status})
        self.current_status = current_status


class CreditNotAvailableError(InvalidCreditStateError):
    def __init__(self, credit_id: int, current_status: str) -> None:
        super().__init__(
            f"Credit {credit_id} is not available (status: {current_status})",
            current_status=current_status,
        )


class CreditAlreadyRetiredError(InvalidCreditStateError):
    def __init__(self, credit_id: int) -> None:
        super().__init__(
            f"Credit {credit_id} is already retired", current_status="retired"
        )


class CreditLostRaceError(RegistryError):
    """Another operation changed the credit between the read and the update."""

    status_code = status.HTTP_409_CONFLICT
    error_type = "lost_race"

    def __init__(self, credit_id: int) -> None:
        super().__init__(
            f"Credit {credit_id} is no longer available, it was acquired by another buyer",
            details={"credit_id": credit_id},
        )


class SelfPurchaseError(RegistryError):
    error_type = "self_transaction"

    def __init__(self, credit_id: int) -> None:
        super().__init__(
            f"Cannot purchase your own credit ({credit_id})",
            details={"credit_id": credit_id},
        )


class SelfTransferError(RegistryError):
    error_type = "self_transaction"

    def __init__(self, credit_id: int) -> None:
        super().__init__(
            f"Cannot transfer credit {credit_id} to its current owner",
            details={"credit_id": credit_id},
        )


class CreditOwnershipError(RegistryError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "access_denied"

    def __init__(self, credit_id: int, user_id: int) -> None:
        super().__init__(
            f"Credit {credit_id} is not owned by user {user_id}",
            details={"credit_id": credit_id, "user_id": user_id},
        )


class CreditTransferDeniedError(RegistryError):
    """Raised when access control blocks a transfer and no fallback is permitted."""

    status_code = status.HTTP_403_FORBIDDEN
    error_type = "access_denied"


class AuditWriteError(RegistryError):
    """The transaction log insert failed after the credit was mutated."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "audit_write_failure"


class StoreError(RegistryError):
    """The data store rejected or failed an operation."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "store_error"


class StorePermissionDeniedError(StoreError):
    """Row level access control refused the write."""

    status_code = status.HTTP_403_FORBIDDEN
    error_type = "access_denied"


class StoreUnavailableError(StoreError):
    """A transient data store failure. Safe to retry the whole operation."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "store_unavailable"


class StoreTimeoutError(StoreUnavailableError):
    error_type = "timeout"

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"Data store call '{operation}' timed out after {timeout}s, please retry",
            details={"operation": operation, "timeout_seconds": timeout},
        )
        self.operation = operation


class CreditValidationError(RegistryError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_type = "validation_error"
