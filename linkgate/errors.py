"""Failure kinds raised by the link registry and the redemption gate.

Each class carries the HTTP status and the stable error code the API layer
reports in its error envelope.
"""


class LinkError(Exception):
    status_code = 500
    code = "error"
    default_message = "request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(LinkError):
    status_code = 400
    code = "invalid_input"
    default_message = "invalid link parameters"


class TokenExhaustion(LinkError):
    status_code = 503
    code = "token_exhaustion"
    default_message = "could not allocate a unique token"


class NotFound(LinkError):
    status_code = 404
    code = "not_found"
    default_message = "link not found"


class PermissionDenied(LinkError):
    status_code = 403
    code = "permission_denied"
    default_message = "permission denied"


class Expired(LinkError):
    status_code = 410
    code = "expired"
    default_message = "link expired"


class LimitReached(LinkError):
    status_code = 403
    code = "limit_reached"
    default_message = "download limit reached"


class AuthRequired(LinkError):
    status_code = 401
    code = "auth_required"
    default_message = "this link requires login"


class WaitNotElapsed(LinkError):
    status_code = 425
    code = "wait_not_elapsed"
    default_message = "please wait the required time before downloading"


class FileMissing(LinkError):
    status_code = 404
    code = "file_missing"
    default_message = "file not found on server"


class StorageError(LinkError):
    status_code = 500
    code = "storage_error"
    default_message = "link storage unavailable"


class CounterUpdateFailed(LinkError):
    """Download delivered but the usage counter could not be written. Logged, never returned."""

    code = "counter_update_failed"
    default_message = "download counter update failed"
