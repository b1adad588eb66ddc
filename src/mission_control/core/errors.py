"""Error taxonomy shared by the core operations and translated at the HTTP boundary."""


class MissionControlError(Exception):
    """Base class. Carries the HTTP status it maps to and extra fields for the error body."""

    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details}


class ValidationError(MissionControlError):
    status_code = 400


class NoAssignedAgent(ValidationError):
    pass


class InvalidPayload(ValidationError):
    pass


class InvalidFormat(ValidationError):
    pass


class PlanningAlreadyStarted(ValidationError):
    pass


class NotFound(MissionControlError):
    status_code = 404


class TaskNotFound(NotFound):
    pass


class AgentNotFound(NotFound):
    pass


class SessionNotFound(NotFound):
    pass


class NoActiveTask(NotFound):
    pass


class Conflict(MissionControlError):
    status_code = 409


class AlreadyLinked(Conflict):
    pass


class Unauthorized(MissionControlError):
    status_code = 401


class GatewayUnavailable(MissionControlError):
    status_code = 503


class DispatchFailed(MissionControlError):
    status_code = 500
