from importlib.metadata import version

from .errors import MalformedPatternError, RouteConflictError, RouteError
from .router import Router
from .tree import allowed_methods, http_route, path_params

__all__ = [
    "MalformedPatternError",
    "RouteConflictError",
    "RouteError",
    "Router",
    "__version__",
    "allowed_methods",
    "http_route",
    "path_params",
]

__version__ = version("pathmux")
