"""Typed failures raised by the store, gateway and reader.

Each error carries a stable ``code`` (used on the wire) and the HTTP status
the API answers with. ``retryable`` marks transient failures a caller may
retry.
"""


class TaskLensError(Exception):
    code = 'error'
    status_code = 500
    retryable = False

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.code.replace('_', ' ')
        super().__init__(self.detail)


class Unauthorized(TaskLensError):
    code = 'unauthorized'
    status_code = 401


class NotFound(TaskLensError):
    code = 'not_found'
    status_code = 404


class ValidationError(TaskLensError):
    code = 'validation_error'
    status_code = 400


class StoreUnavailable(TaskLensError):
    code = 'store_unavailable'
    status_code = 503
    retryable = True


class ReorderConflict(TaskLensError):
    code = 'reorder_conflict'
    status_code = 409
    retryable = True


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (Unauthorized, NotFound, ValidationError, StoreUnavailable, ReorderConflict)
}


def error_from_payload(payload: dict | None, status_code: int) -> TaskLensError:
    """Rebuild a typed error from an API error body ``{ok, error, detail}``."""
    payload = payload or {}
    cls = ERRORS_BY_CODE.get(payload.get('error'))
    if cls is None:
        cls = next((c for c in ERRORS_BY_CODE.values() if c.status_code == status_code), TaskLensError)
    return cls(payload.get('detail'))
