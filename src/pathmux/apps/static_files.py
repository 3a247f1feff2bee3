"""Static files app.

Serves a directory under a catch-all route, e.g. "/files/*filepath". The
directory is scanned once when the app is created; requests only do dict
lookups, so files added or removed afterwards are not picked up. Reading and
sending the file is left to the server through `proto.response_file`.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pathmux.tree import path_params

if TYPE_CHECKING:
    from pathmux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FileEntry:
    """A file that can be served."""

    path_str: str  # Path to file on disk (as string for response_file)
    content_type: str
    size: int  # File size in bytes


def _get_content_type(path: Path) -> str:
    """Guess MIME type for a file."""
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or "application/octet-stream"


def _build_file_table(root: Path, index: str | None) -> dict[str, FileEntry]:
    """Walk root and map each relative posix path to its file.

    Directories holding an index file are mapped too, both as "dir" and "dir/"
    (root itself as ""). Symlinked files resolving outside root are skipped and
    symlinked directories are not followed.
    """
    table: dict[str, FileEntry] = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            file_path = Path(dirpath) / filename
            resolved = file_path.resolve()
            if not resolved.is_relative_to(root) or not resolved.is_file():
                logger.debug("static_files: skipping %s", file_path)
                continue

            entry = FileEntry(
                path_str=str(resolved),
                content_type=_get_content_type(file_path),
                size=resolved.stat().st_size,
            )
            table[file_path.relative_to(root).as_posix()] = entry

            if filename == index:
                parent = file_path.parent.relative_to(root).as_posix()
                if parent == ".":
                    table[""] = entry
                else:
                    table[parent] = entry
                    table[parent + "/"] = entry
    return table


def static_files(
    directory: Path,
    *,
    param: str = "filepath",
    index: str | None = "index.html",
) -> RSGIHTTPHandler:
    """Create an app serving files from directory.

    Args:
        directory: Root directory of the files to serve.
        param: Name of the catch-all the app is registered under, e.g.
            "filepath" for "/files/*filepath".
        index: File served for directory paths. None answers 404 instead.

    Example:
        router.get("/files/*filepath", static_files(Path("./resources")))
    """
    root = directory.resolve()
    if not root.is_dir():
        msg = f"{directory} is not a directory"
        raise ValueError(msg)

    start_time = time.perf_counter()
    table = _build_file_table(root, index)
    elapsed_ms = (time.perf_counter() - start_time) * 1000
    logger.info("static_files: %d paths from %s, %.1fms", len(table), root, elapsed_ms)

    async def app(scope: HTTPScope, proto: HTTPProtocol) -> None:
        captured = path_params.get({}).get(param, "/")
        entry = table.get(captured[1:])  # Strip leading slash
        if entry is None:
            proto.response_str(
                404, [("content-type", "text/plain; charset=utf-8")], "404 page not found"
            )
            return
        proto.response_file(
            200,
            [
                ("content-type", entry.content_type),
                ("content-length", str(entry.size)),
            ],
            entry.path_str,
        )

    return app
