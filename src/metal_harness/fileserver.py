"""Ephemeral static HTTP server for install artifacts.

Serves one directory (symlinks followed, since artifacts are linked in from
the build directory) on an OS-assigned port. The guest fetches the live
Ignition config, the rootfs and the metal image from it.
"""

from __future__ import annotations

from pathlib import Path

from aiohttp import web

from metal_harness._logging import get_logger

logger = get_logger(__name__)


class StaticFileServer:
    """aiohttp static file server bound to a directory.

    Example:
        >>> server = StaticFileServer(tmpdir)
        >>> await server.start()
        >>> url = f"http://10.0.2.2:{server.port}"
        >>> await server.stop()
    """

    def __init__(self, root: Path):
        self.root = root
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._port: int | None = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("file server is not running")
        return self._port

    @property
    def running(self) -> bool:
        return self.runner is not None

    async def start(self, host: str = "0.0.0.0", port: int = 0) -> None:
        """Start serving. Port 0 lets the kernel pick a free port."""
        if self.runner is not None:
            raise RuntimeError("file server already started")

        self.app = web.Application()
        self.app.router.add_static("/", self.root, follow_symlinks=True, show_index=True)

        self.runner = web.AppRunner(self.app, access_log=None)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        try:
            await self.site.start()
        except OSError:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            raise

        self._port = self.runner.addresses[0][1]
        logger.debug("File server started", extra={"root": str(self.root), "port": self._port})

    async def stop(self) -> None:
        """Stop serving. Safe to call more than once."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
            logger.debug("File server stopped", extra={"root": str(self.root), "port": self._port})
        self.site = None
        self.runner = None
        self.app = None
