from typing import Optional


class AptitudeError(Exception):
    """Base class for every failure raised by the aptitude test flow."""


class ValidationError(AptitudeError):
    """Malformed or unresolvable identifier, or an incomplete submission."""


class NetworkError(AptitudeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RedirectLoopError(AptitudeError):
    def __init__(self, attempts: int):
        super().__init__(
            f"Detected a redirect loop after {attempts} resolution attempts. "
            "Please leave the aptitude test page and contact support."
        )
        self.attempts = attempts


class SessionStateError(AptitudeError):
    """The requested operation is not allowed in the session's current state."""
