"""Error kinds raised by the services and mapped to HTTP statuses in main.py."""


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class ValidationError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


class ForbiddenError(ValueError):
    pass


class FatalConfigurationError(RuntimeError):
    """Seed data is broken (e.g. the "Other" category is missing)."""
