"""HTTP router/multiplexer implementation.

Inspired by julienschmidt/httprouter's Router and go-chi/mux's Mux
"""

import logging
import threading
from asyncio import AbstractEventLoop
from functools import reduce
from pathlib import Path
from typing import Literal, cast, overload
from urllib.parse import quote

from pathmux.apps.static_files import static_files
from pathmux.errors import MalformedPatternError
from pathmux.rsgi import (
    HTTPProtocol,
    HTTPScope,
    Middleware,
    PanicHandler,
    RSGIHTTPHandler,
    WebsocketProtocol,
    WebsocketScope,
)
from pathmux.tree import (
    ANY_METHOD,
    FrozenDict,
    Lookup,
    Match,
    MethodNotAllowed,
    Node,
    Route,
    add_route,
    allowed_methods,
    find_route,
    http_route,
    iter_routes,
    path_params,
)

logger = logging.getLogger(__name__)

type HTTPMethod = Literal[
    "CONNECT", "DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT", "TRACE"
]

_TEXT_PLAIN = ("content-type", "text/plain; charset=utf-8")


async def default_not_found(_scope: HTTPScope, proto: HTTPProtocol) -> None:
    proto.response_str(404, [_TEXT_PLAIN], "404 page not found")


async def default_method_not_allowed(_scope: HTTPScope, proto: HTTPProtocol) -> None:
    allow = ", ".join(allowed_methods.get(()))
    proto.response_str(405, [_TEXT_PLAIN, ("allow", allow)], "Method Not Allowed")


class Router:
    """RSGI app dispatching requests to handlers registered per method and path.

    Handlers are plain RSGI HTTP handlers. The matched path params are read with
    `path_params.get()` and the matched pattern with `http_route.get()`.

    Routes can be registered while the router is serving: every registration
    swaps in a new immutable tree, and a request always resolves against a
    single, complete tree.
    """

    __slots__ = (
        "_handle_options",
        "_lock",
        "_method_not_allowed_handler",
        "_middleware",
        "_not_found_handler",
        "_panic_handler",
        "_redirect_trailing_slash",
        "_trees",
    )
    _trees: FrozenDict[str, Node[RSGIHTTPHandler]]
    _middleware: tuple[Middleware[RSGIHTTPHandler], ...]

    def __init__(
        self,
        *,
        not_found_handler: RSGIHTTPHandler | None = None,
        method_not_allowed_handler: RSGIHTTPHandler | None = None,
        panic_handler: PanicHandler | None = None,
        handle_options: bool = True,
        redirect_trailing_slash: bool = False,
    ) -> None:
        """
        Args:
            not_found_handler: Called when no route matches the path.
                Default answers 404.
            method_not_allowed_handler: Called when the path matches under
                other methods only. `allowed_methods.get()` holds those
                methods. Default answers 405 with an Allow header.
            panic_handler: Called with the exception when a handler raises.
                Without one the exception propagates to the server.
            handle_options: Answer unrouted OPTIONS requests with 204 and an
                Allow header, for paths that other methods match.
            redirect_trailing_slash: Redirect when the path doesn't match but
                the same path with the trailing slash added/removed does.
                301 for GET and HEAD, 308 otherwise.
        """
        self._lock = threading.Lock()
        self._trees = FrozenDict()
        self._middleware = ()
        self._not_found_handler = not_found_handler
        self._method_not_allowed_handler = method_not_allowed_handler
        self._panic_handler = panic_handler
        self._handle_options = handle_options
        self._redirect_trailing_slash = redirect_trailing_slash

    # --- RSGI -----------------------------------------------------------------
    def __rsgi_init__(self, loop: AbstractEventLoop) -> None:
        routes = self.routes()
        logger.info("router serving %d routes", len(routes))
        for route in routes:
            logger.debug("  %-7s %s", route.method, route.pattern)

    def __rsgi_del__(self, loop: AbstractEventLoop) -> None:
        logger.debug("router shutting down")

    async def __call__(self, scope: HTTPScope, proto: HTTPProtocol) -> None:
        """Routers are RSGI HTTP handlers too, so they can be wrapped by middleware."""
        await self.__rsgi__(scope, proto)

    @overload
    async def __rsgi__(self, scope: HTTPScope, proto: HTTPProtocol) -> None: ...
    @overload
    async def __rsgi__(
        self, scope: WebsocketScope, proto: WebsocketProtocol
    ) -> None: ...
    async def __rsgi__(
        self,
        scope: HTTPScope | WebsocketScope,
        proto: HTTPProtocol | WebsocketProtocol,
    ) -> None:
        if scope.proto != "http":  # only http is routed
            logger.debug("refusing %s connection to %s", scope.proto, scope.path)
            cast("WebsocketProtocol", proto).close(403)
            return

        scope = cast("HTTPScope", scope)
        proto = cast("HTTPProtocol", proto)
        result = self.lookup(scope.method, scope.path)

        if isinstance(result, Match):
            handler = reduce(
                lambda h, m: m(h), reversed(self._middleware), result.handler
            )
            params_token = path_params.set(result.params)
            route_token = http_route.set(result.route.pattern)
            try:
                await self._call(handler, scope, proto)
            finally:
                http_route.reset(route_token)
                path_params.reset(params_token)
            return

        if isinstance(result, MethodNotAllowed):
            if self._handle_options and scope.method == "OPTIONS":
                allow = ", ".join(sorted({*result.allowed, "OPTIONS"}))
                proto.response_empty(204, [("allow", allow)])
                return
            allowed_token = allowed_methods.set(result.allowed)
            try:
                await self._call(
                    self._method_not_allowed_handler or default_method_not_allowed,
                    scope,
                    proto,
                )
            finally:
                allowed_methods.reset(allowed_token)
            return

        location = self._trailing_slash_redirect(scope)
        if location is not None:
            status = 301 if scope.method in ("GET", "HEAD") else 308
            proto.response_empty(status, [("location", location)])
            return
        await self._call(self._not_found_handler or default_not_found, scope, proto)

    async def _call(
        self, handler: RSGIHTTPHandler, scope: HTTPScope, proto: HTTPProtocol
    ) -> None:
        """Runs handler, handing any exception it raises to the panic handler."""
        try:
            await handler(scope, proto)
        except Exception as exc:
            if self._panic_handler is None:
                raise
            logger.warning(
                "recovered from %s in handler for %s %s",
                type(exc).__name__,
                scope.method,
                scope.path,
                exc_info=exc,
            )
            await self._panic_handler(scope, proto, exc)

    def _trailing_slash_redirect(self, scope: HTTPScope) -> str | None:
        """Location to redirect to if toggling the trailing slash finds a route."""
        path = scope.path
        if not self._redirect_trailing_slash or scope.method == "CONNECT":
            return None
        if path == "/":
            return None
        alternative = path[:-1] if path.endswith("/") else path + "/"
        if not isinstance(self.lookup(scope.method, alternative), Match):
            return None
        # scope.path is already unescaped
        location = quote(alternative)
        if scope.query_string:
            return f"{location}?{scope.query_string}"
        return location

    # --- dispatch -------------------------------------------------------------
    def lookup(self, method: str, path: str) -> Lookup[RSGIHTTPHandler]:
        """Resolves method/path against the current routes without calling anything.

        path must already be unescaped (granian does this for scope.path).
        """
        return find_route(self._trees, method, path)

    def routes(self) -> list[Route[RSGIHTTPHandler]]:
        """Registered routes, ordered by method then path."""
        return list(iter_routes(self._trees))

    # --- registration ---------------------------------------------------------
    def _register(self, method: str, path: str, handler: RSGIHTTPHandler) -> None:
        with self._lock:
            self._trees = add_route(self._trees, method, path, handler)
        logger.debug("registered %s %s", method, path)

    def handle(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for any http method.

        Routes registered for a specific method take precedence.
        """
        self._register(ANY_METHOD, path, handler)

    def method(
        self, method: HTTPMethod | str | None, path: str, handler: RSGIHTTPHandler
    ) -> None:
        """Registers handler at path for method, or any method if None."""
        self._register(method if method is not None else ANY_METHOD, path, handler)

    def connect(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for CONNECT."""
        self._register("CONNECT", path, handler)

    def delete(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for DELETE."""
        self._register("DELETE", path, handler)

    def get(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for GET."""
        self._register("GET", path, handler)

    def head(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for HEAD."""
        self._register("HEAD", path, handler)

    def options(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for OPTIONS."""
        self._register("OPTIONS", path, handler)

    def patch(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for PATCH."""
        self._register("PATCH", path, handler)

    def post(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for POST."""
        self._register("POST", path, handler)

    def put(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for PUT."""
        self._register("PUT", path, handler)

    def trace(self, path: str, handler: RSGIHTTPHandler) -> None:
        """Registers handler at path for TRACE."""
        self._register("TRACE", path, handler)

    def serve_files(self, path: str, directory: Path) -> None:
        """Serves files from directory under path for GET and HEAD.

        path must end with "/*filepath", e.g. "/static/*filepath".
        """
        if not path.endswith("/*filepath"):
            msg = f"path must end with '/*filepath', provided {path=}"
            raise MalformedPatternError(msg)
        app = static_files(directory, param="filepath")
        self.get(path, app)
        self.head(path, app)

    def not_found(self, handler: RSGIHTTPHandler) -> None:
        """Registers http handler for paths that can't be found."""
        if self._not_found_handler is not None:
            msg = "not found handler is already set"
            raise ValueError(msg)
        self._not_found_handler = handler

    def method_not_allowed(self, handler: RSGIHTTPHandler) -> None:
        """Registers http handler for paths where the method is unresolved."""
        if self._method_not_allowed_handler is not None:
            msg = "method not allowed handler is already set"
            raise ValueError(msg)
        self._method_not_allowed_handler = handler

    def panic(self, handler: PanicHandler) -> None:
        """Registers handler called with the exception when a handler raises."""
        if self._panic_handler is not None:
            msg = "panic handler is already set"
            raise ValueError(msg)
        self._panic_handler = handler

    def use(self, *middleware: Middleware[RSGIHTTPHandler]) -> None:
        """Adds middleware wrapped around matched handlers, first added is outermost."""
        with self._lock:
            self._middleware = self._middleware + middleware
