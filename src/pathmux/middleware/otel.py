"""OpenTelemetry tracing and metrics middleware.

Creates an HTTP server span and records request duration for each request,
using the HTTP semantic conventions.

Install with: pip install "pathmux[otel]"
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from pathmux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler

try:
    from opentelemetry import metrics, trace
    from opentelemetry.propagate import extract
    from opentelemetry.trace import SpanKind, StatusCode, TracerProvider
except ImportError as e:
    msg = (
        "OpenTelemetry middleware requires the 'otel' extra. "
        "Install with: pip install 'pathmux[otel]'"
    )
    raise ImportError(msg) from e

from pathmux.middleware._recording import StatusRecordingProtocol
from pathmux.tree import http_route, path_params

_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def otel(
    *,
    tracer_provider: TracerProvider | None = None,
    meter_provider: metrics.MeterProvider | None = None,
) -> Callable[[RSGIHTTPHandler], RSGIHTTPHandler]:
    """Create OpenTelemetry tracing and metrics middleware.

    Register with `router.use(otel())`. The span is named after the matched
    pattern ("GET /product/:id"), and path params are added as
    `http.route.param.<name>` attributes. Trace context is extracted from the
    request headers. Only depends on `opentelemetry-api`.

    Metrics emitted:
        - `http.server.request.duration` (histogram, seconds)
    """
    tracer = trace.get_tracer("pathmux", tracer_provider=tracer_provider)
    meter = metrics.get_meter("pathmux", meter_provider=meter_provider)
    duration_histogram = meter.create_histogram(
        "http.server.request.duration",
        unit="s",
        description="Duration of HTTP server requests.",
        explicit_bucket_boundaries_advisory=_DURATION_BUCKETS,
    )

    def middleware(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def traced_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            route = http_route.get("")
            method = scope.method

            attributes: dict[str, str | int] = {
                "http.request.method": method,
                "url.path": scope.path,
                "url.scheme": scope.scheme,
                "network.protocol.version": scope.http_version,
                "client.address": scope.client,
            }
            if route:
                attributes["http.route"] = route
            if scope.query_string:
                attributes["url.query"] = scope.query_string
            # not part of the semantic conventions
            for key, value in path_params.get({}).items():
                attributes[f"http.route.param.{key}"] = value

            metric_attrs: dict[str, str | int] = {"http.request.method": method}
            if route:
                metric_attrs["http.route"] = route

            start = time.perf_counter()
            with tracer.start_as_current_span(
                f"{method} {route}" if route else method,
                context=extract(scope.headers),
                kind=SpanKind.SERVER,
                attributes=attributes,
            ) as span:
                recording = StatusRecordingProtocol(proto)
                try:
                    await handler(scope, recording)
                finally:
                    if recording.status is not None:
                        span.set_attribute("http.response.status_code", recording.status)
                        metric_attrs["http.response.status_code"] = recording.status
                        if recording.status >= 500:
                            span.set_status(StatusCode.ERROR)
                    duration_histogram.record(
                        time.perf_counter() - start, metric_attrs
                    )

        return traced_handler

    return middleware
