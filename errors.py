"""
Error taxonomy for the Plug-In booking engine.

Every error carries the HTTP status the API answers with, so route handlers
can let them propagate and a single exception handler renders them.
"""


class PlugInError(Exception):
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class ValidationError(PlugInError):
    """Bad input or a request the charger cannot serve."""
    status_code = 400


class DecodeError(ValidationError):
    """A stored document does not decode into its entity."""


class AuthError(PlugInError):
    """No resolvable acting user."""
    status_code = 401


class PermissionDeniedError(AuthError):
    """The acting user may not perform this action."""
    status_code = 403


class NotFoundError(PlugInError):
    status_code = 404


class InvalidTransitionError(PlugInError):
    """Booking status change not allowed from the current status."""
    status_code = 409


class TransientBackendError(PlugInError):
    """The store could not be reached; safe to retry."""
    status_code = 503
