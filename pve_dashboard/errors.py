"""Error taxonomy shared by the hypervisor client, services and routes.

Every error carries the HTTP status the API answers with and a stable
``code``. ``serialize_error`` renders any exception into the shape returned
to operators; it never includes stack traces or request credentials.
"""

from typing import Any


class DashboardError(Exception):
    status_code = 500
    code = "internal_error"


class ValidationError(DashboardError):
    status_code = 400
    code = "validation_error"


class ConfigurationError(DashboardError):
    status_code = 400
    code = "configuration_error"


class NotFoundError(DashboardError):
    status_code = 404
    code = "not_found"


class UnauthenticatedError(DashboardError):
    status_code = 401
    code = "unauthenticated"


class ForbiddenError(DashboardError):
    status_code = 403
    code = "forbidden"


class ConflictError(DashboardError):
    status_code = 409
    code = "ip_conflict"
    public_message = "IP already in use"

    def __init__(self, message: str | None = None, *, ip: str | None = None):
        self.ip = ip
        super().__init__(message or self.public_message)


class PersistenceError(DashboardError):
    code = "persistence_error"


class HypervisorError(DashboardError):
    code = "hypervisor_error"


class AuthError(HypervisorError):
    code = "hypervisor_auth_error"


class HypervisorUnreachable(HypervisorError):
    code = "hypervisor_unreachable"


class HttpError(HypervisorError):
    code = "hypervisor_http_error"

    def __init__(self, *, method: str, path: str, status_code: int, body: str):
        self.method = method
        self.path = path
        self.status = status_code
        self.body = body
        snippet = body.strip()[:240]
        detail = f": {snippet}" if snippet else ""
        super().__init__(f"{method} {path} failed ({status_code}){detail}")


class TaskError(HypervisorError):
    code = "hypervisor_task_failed"

    def __init__(self, upid: str, exit_status: str):
        self.upid = upid
        self.exit_status = exit_status
        super().__init__(f"task failed: {exit_status}")


class TimeoutExceeded(HypervisorError, TimeoutError):
    code = "timeout"


class ProvisioningFailed(DashboardError):
    """Raised by the orchestrator after the reservation was rolled back."""

    def __init__(
        self,
        *,
        stage: str,
        cause: Exception,
        server_id: int | None,
        rollback_error: str | None = None,
    ):
        self.stage = stage
        self.cause = cause
        self.server_id = server_id
        self.rollback_error = rollback_error
        self.status_code = getattr(cause, "status_code", 500)
        self.code = getattr(cause, "code", "internal_error")
        super().__init__(str(cause))


def serialize_error(exc: BaseException) -> dict[str, Any]:
    cause = exc.__cause__ or getattr(exc, "cause", None)
    payload: dict[str, Any] = {
        "name": exc.__class__.__name__,
        "message": str(exc),
        "code": getattr(exc, "code", None),
        "cause": str(cause) if cause is not None else None,
    }
    if isinstance(exc, ProvisioningFailed):
        payload["name"] = exc.cause.__class__.__name__
        payload["stage"] = exc.stage
        payload["serverId"] = exc.server_id
        payload["rollbackError"] = exc.rollback_error
        payload["cause"] = (
            str(exc.cause.__cause__) if exc.cause.__cause__ is not None else None
        )
    return payload
