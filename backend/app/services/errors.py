"""
Application errors raised by services and turned into HTTP responses by the
exception handler registered in app.main.
"""
from typing import Optional

READ_ONLY_VERSION_MESSAGE = "Cette version est en lecture seule."
READ_ONLY_ORDER_MESSAGE = "Seuls les bons de commande en brouillon peuvent etre modifies."
GENERIC_LINES_UPDATE_MESSAGE = "Impossible de mettre a jour les lignes."

_READ_ONLY_MARKERS = ("row-level security", "read-only")


class AppError(Exception):
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class ReadOnlyError(AppError):
    status_code = 403

    def __init__(self, message: str = READ_ONLY_VERSION_MESSAGE):
        super().__init__(message)


class ReferenceConflictError(AppError):
    """The generated reference collided with an existing order."""
    status_code = 409


class ReferenceExhaustedError(AppError):
    status_code = 409

    def __init__(self, message: str = "could not generate unique reference"):
        super().__init__(message)


class StoreError(AppError):
    """A persistence call failed; message is shown to the user as is."""
    status_code = 400


def resolve_action_error(message: Optional[str], fallback: str = "Une erreur est survenue.") -> str:
    """Map permission-style store failures onto the read-only message."""
    if not message:
        return fallback
    lowered = message.lower()
    if any(marker in lowered for marker in _READ_ONLY_MARKERS):
        return READ_ONLY_VERSION_MESSAGE
    return message
