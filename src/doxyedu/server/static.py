"""Static asset resolution over an ordered table of mount points.

Each mount pairs a URL prefix with a directory. A request is served by the
mount with the longest matching prefix; the root mount claims whatever no
prefixed mount does. Misses never fall through to another mount.

Usage:
    resolver = StaticResolver.from_config(config)
    app.router.add_route("*", "/{path:.*}", resolver.handle)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import structlog
from aiohttp import web

from doxyedu.core.config import GatewayConfig

logger = structlog.get_logger()

NOT_FOUND_HTML = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>404 - Not Found</title></head>
<body><h1>404</h1><p>The page you requested could not be found.</p></body>
</html>
"""

SERVED_METHODS = frozenset({"GET", "HEAD"})


@dataclass(frozen=True)
class Mount:
    """A (URL prefix, directory) pairing.

    Decorated mounts also expose ``send_file`` so handlers can answer with an
    arbitrary document from the mount root.
    """

    prefix: str
    root: Path
    decorate: bool = False

    def claims(self, path: str) -> bool:
        return path.startswith(self.prefix)

    def locate(self, path: str) -> Path | None:
        """Map a request path to an existing file under this mount."""
        relative = path[len(self.prefix):]
        if "\x00" in relative:
            return None
        parts = PurePosixPath(relative).parts
        if any(part in ("..", "~") for part in parts):
            return None

        root = self.root.resolve()
        candidate = root.joinpath(*[p for p in parts if p != "/"]).resolve()
        if not candidate.is_relative_to(root):
            return None
        if candidate.is_dir():
            candidate = candidate / "index.html"
        if not candidate.is_file():
            return None
        return candidate


class StaticResolver:
    """Serves files from registered mounts and answers misses with a 404 page."""

    def __init__(self, mounts: Sequence[Mount], not_found_page: str = "404.html") -> None:
        if not mounts:
            raise ValueError("at least one mount is required")
        self._mounts = tuple(mounts)
        self._not_found_page = not_found_page

    @classmethod
    def from_config(cls, config: GatewayConfig) -> StaticResolver:
        """Register the UI root and the three vendored asset mounts, in order."""
        return cls(
            [
                Mount("/", config.public_dir, decorate=True),
                Mount("/scram/", config.scramjet_dir),
                Mount("/epoxy/", config.epoxy_dir),
                Mount("/baremux/", config.baremux_dir),
            ],
            not_found_page=config.not_found_page,
        )

    @property
    def mounts(self) -> tuple[Mount, ...]:
        return self._mounts

    def match(self, path: str) -> Mount | None:
        """Return the mount with the longest prefix claiming ``path``."""
        best: Mount | None = None
        for mount in self._mounts:
            if mount.claims(path) and (best is None or len(mount.prefix) > len(best.prefix)):
                best = mount
        return best

    def resolve(self, path: str) -> Path | None:
        mount = self.match(path)
        if mount is None:
            return None
        return mount.locate(path)

    def send_file(self, name: str, status: int = 200) -> web.FileResponse:
        """Send ``name`` from the first decorated mount.

        Raises:
            LookupError: No decorated mount is registered.
            FileNotFoundError: The document does not exist under that mount.
        """
        mount = next((m for m in self._mounts if m.decorate), None)
        if mount is None:
            raise LookupError("no decorated mount registered")
        path = mount.locate(mount.prefix + name.lstrip("/"))
        if path is None:
            raise FileNotFoundError(name)
        return web.FileResponse(path, status=status)

    def not_found(self) -> web.StreamResponse:
        try:
            response = self.send_file(self._not_found_page, status=404)
        except (LookupError, FileNotFoundError):
            return web.Response(status=404, text=NOT_FOUND_HTML, content_type="text/html")
        response.content_type = "text/html"
        return response

    async def handle(self, request: web.Request) -> web.StreamResponse:
        if request.method not in SERVED_METHODS:
            return self.not_found()

        path = self.resolve(request.path)
        if path is None:
            logger.debug("Static miss", path=request.path)
            return self.not_found()
        return web.FileResponse(path)
