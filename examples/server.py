# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pathmux @ file:///${PROJECT_ROOT}/..",
#     "granian[uvloop]>=2.6.0,<3.0.0",
# ]
# ///
"""RSGI server demo.

Fully functional web server using Granian + pathmux Router, covering every kind
of route (static, named params, catch-all, files) and custom 404, 405 and
panic handlers.
"""

import asyncio
import logging
from pathlib import Path

from granian.server.embed import Server

from pathmux import Router, allowed_methods, path_params
from pathmux.middleware.access_log import access_log
from pathmux.rsgi import HTTPProtocol, HTTPScope

ADDRESS = "localhost"
PORT = 3000
RESOURCES = Path(__file__).parent / "resources"

TEXT = [("content-type", "text/plain; charset=utf-8")]


def build_router() -> Router:
    router = Router(
        not_found_handler=not_found,
        method_not_allowed_handler=method_not_allowed,
        panic_handler=panic,
    )
    router.use(access_log())
    router.get("/", home)
    router.get("/product/:id", product)
    router.get("/products/:id/items/:itemid", product_item)
    router.get("/images/*image", image)
    router.get("/panic", explode)
    router.serve_files("/files/*filepath", RESOURCES)
    return router


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    router = build_router()
    server = Server(router, address=ADDRESS, port=PORT, log_access=False)
    try:
        await server.serve()
    except asyncio.CancelledError:
        pass


async def home(s: HTTPScope, p: HTTPProtocol) -> None:
    p.response_str(200, TEXT, "Hello HttpRouter")


async def product(s: HTTPScope, p: HTTPProtocol) -> None:
    p.response_str(200, TEXT, "Product " + path_params.get()["id"])


async def product_item(s: HTTPScope, p: HTTPProtocol) -> None:
    params = path_params.get()
    p.response_str(200, TEXT, f"Product {params['id']} Item {params['itemid']}")


async def image(s: HTTPScope, p: HTTPProtocol) -> None:
    p.response_str(200, TEXT, "Image : " + path_params.get()["image"])


async def explode(s: HTTPScope, p: HTTPProtocol) -> None:
    msg = "Ups"
    raise RuntimeError(msg)


async def not_found(s: HTTPScope, p: HTTPProtocol) -> None:
    p.response_str(404, TEXT, "Gak Ketemu")


async def method_not_allowed(s: HTTPScope, p: HTTPProtocol) -> None:
    allow = ", ".join(allowed_methods.get(()))
    p.response_str(405, [*TEXT, ("allow", allow)], "Gak Boleh")


async def panic(s: HTTPScope, p: HTTPProtocol, exc: Exception) -> None:
    p.response_str(500, TEXT, f"Panic : {exc}")


if __name__ == "__main__":
    asyncio.run(main())
