class CycleError(Exception):
    """Base class for errors raised by the cycle engine."""

    status_code = 500


class ValidationError(CycleError, ValueError):
    status_code = 400


class NotFoundError(CycleError, LookupError):
    status_code = 404


class UpstreamError(CycleError, RuntimeError):
    """A dependency (rate provider, store) failed; the caller may retry."""

    status_code = 502


class ConflictError(CycleError):
    status_code = 409


class CycleAlreadyExists(ConflictError):
    def __init__(self, workspace_id: int, month) -> None:
        super().__init__(f"Cycle already exists for {month.isoformat()}")
        self.workspace_id = workspace_id
        self.month = month


class AuthError(CycleError):
    status_code = 401
