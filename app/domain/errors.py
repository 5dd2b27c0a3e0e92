from __future__ import annotations


class ProvisioningError(Exception):
    pass


class ValidationError(ProvisioningError):
    pass


class RequestLimitExceededError(ValidationError):
    def __init__(self, message: str, active_count: int) -> None:
        super().__init__(message)
        self.active_count = active_count


class NotFoundError(ProvisioningError):
    pass


class UnauthorizedError(ProvisioningError):
    pass


class InvalidTransitionError(ProvisioningError):
    pass


class AlreadyTerminalError(InvalidTransitionError):
    pass


class AssignmentError(ProvisioningError):
    pass


class RequestNotInAssignableStateError(AssignmentError, InvalidTransitionError):
    pass


class DeviceUnavailableError(AssignmentError):
    pass


class PersistenceFailureError(ProvisioningError):
    pass


class ConflictError(ProvisioningError):
    pass
