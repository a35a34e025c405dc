class NotFound(Exception):
    pass


class ValidationFailed(Exception):
    pass


class InvalidTransition(Exception):
    def __init__(self, current: str | None, target: str, message: str | None = None):
        self.current = current
        self.target = target
        super().__init__(message or f"cannot move from {current} to {target}")


class FetchError(Exception):
    """Upstream page or feed could not be used (network, HTTP status, bot wall)."""


class PersistenceFailed(Exception):
    pass


class Unauthorized(Exception):
    pass
