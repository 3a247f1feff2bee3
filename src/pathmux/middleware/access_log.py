"""Access log middleware.

Logs one line per request once the handler returns:

    GET /product/1 -> 200 (0.4ms)

Works on any RSGI HTTP handler, so it can wrap matched handlers through
`router.use(access_log())` or the whole router: `access_log()(router)`.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from pathmux.middleware._recording import StatusRecordingProtocol

if TYPE_CHECKING:
    from collections.abc import Callable

    from pathmux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler

_default_logger = logging.getLogger(__name__)


def access_log(
    *,
    logger: logging.Logger | None = None,
    level: int = logging.INFO,
) -> Callable[[RSGIHTTPHandler], RSGIHTTPHandler]:
    """Create access log middleware.

    Args:
        logger: Logger to write to. Defaults to `pathmux.middleware.access_log`.
        level: Level of the log records.
    """
    log = logger or _default_logger

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def logged_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            start = time.perf_counter()
            recording = StatusRecordingProtocol(proto)
            try:
                await handler(scope, recording)
            except Exception:
                log.log(level, "%s %s -> unhandled error", scope.method, scope.path)
                raise
            log.log(
                level,
                "%s %s -> %s (%.1fms)",
                scope.method,
                scope.path,
                recording.status if recording.status is not None else "-",
                (time.perf_counter() - start) * 1000,
            )

        return logged_handler

    return middleware
