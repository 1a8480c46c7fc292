from typing import Optional


class LifecycleError(Exception):
    """Base class for every error the issue service reports to callers."""

    status_code = 500
    code = "error"
    retryable = False

    def __init__(self, detail: str, *, hint: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.hint = hint


class NotFound(LifecycleError):
    """Unknown issue, message or profile ID."""

    status_code = 404
    code = "not_found"


class Forbidden(LifecycleError):
    """The actor lacks the capability the operation requires."""

    status_code = 403
    code = "forbidden"


class Conflict(LifecycleError):
    """Mutation attempted on a closed issue, or an out-of-order transition."""

    status_code = 409
    code = "conflict"


class ValidationError(LifecycleError):
    """Malformed input rejected before any write happens."""

    status_code = 422
    code = "validation_error"


class UpstreamError(LifecycleError):
    """The diagnosis, chat or payment provider failed or timed out."""

    status_code = 502
    code = "upstream_error"
    retryable = True


class MalformedResponse(UpstreamError):
    """The provider answered, but not in the shape we asked for."""

    code = "malformed_response"
