"""Error taxonomy shared by the store, the engine and the API.

API-facing errors carry an HTTP ``status_code`` and a short machine ``code``;
the single exception handler in ``agenda.main`` turns them into
``{"error": code, "detail": message}`` responses.

Execution-stage errors (:class:`ExecutionError` and its subclasses) never reach
a client directly. The execution engine records their message in the
schedule's execution log, where the owner can read it.
"""

from __future__ import annotations


class AgendaError(Exception):
    """Base class for every error raised deliberately by agenda."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(AgendaError):
    """Bad or missing fields, empty recipients, no matching entries."""

    status_code = 400
    code = "validation_error"


class Unauthorized(AgendaError):
    status_code = 401
    code = "unauthorized"


class NotFound(AgendaError):
    """Unknown schedule, or a schedule owned by another credential."""

    status_code = 404
    code = "not_found"


class ScheduleConflict(AgendaError):
    """The schedule is already running or already executed."""

    status_code = 409
    code = "conflict"


class RateLimited(AgendaError):
    status_code = 429
    code = "rate_limited"


class StoreUnavailable(AgendaError):
    """The schedule store could not be reached. Transient."""

    status_code = 503
    code = "store_unavailable"


class ExecutionError(AgendaError):
    """A failure inside one execution attempt."""

    code = "execution_failed"


class DecryptionError(ExecutionError):
    """Wrong passphrase or corrupted ciphertext. Never retried."""

    code = "decryption_failed"


class SelectionError(ExecutionError):
    code = "selection_failed"


class RenderError(ExecutionError):
    code = "render_failed"


class DeliveryError(ExecutionError):
    code = "delivery_failed"
