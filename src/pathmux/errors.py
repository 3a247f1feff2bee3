"""Registration errors.

Lookup misses are never errors, only registration is.
"""


class RouteError(ValueError):
    """Route could not be registered."""


class MalformedPatternError(RouteError):
    """Pattern (or method) is invalid on its own, regardless of other routes."""


class RouteConflictError(RouteError):
    """Pattern cannot coexist with a route already registered for the method."""
