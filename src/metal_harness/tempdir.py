"""Owned temporary directories for install runs.

An install run stages artifacts in a temp dir, serves it over HTTP and then
hands both to the machine it launched. The guard removes the directory (and
stops its servers) when the setup block exits, unless ownership was moved
out with release():

    async with await OwnedTempDir.create(tmp_root, "metal-harness-pxe") as tmp:
        server = StaticFileServer(tmp.path)
        await server.start()
        tmp.bind_server(server)
        ...
        owned = tmp.release()   # the machine handle now removes it
    return InstalledMachine(instance, owned, ...)
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from metal_harness._logging import get_logger
from metal_harness.fileserver import StaticFileServer

logger = get_logger(__name__)


class OwnedTempDir:
    """A temporary directory with exactly one owner.

    Attributes:
        path: Directory path
        servers: File servers whose lifetime is bound to the directory
    """

    def __init__(self, path: Path, servers: list[StaticFileServer] | None = None):
        self.path = path
        self.servers: list[StaticFileServer] = servers or []
        self._armed = True

    @classmethod
    async def create(cls, root: Path, prefix: str) -> OwnedTempDir:
        """Create a fresh directory under root (mode 0700)."""
        path = await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=root)
        logger.debug("Created temp dir", extra={"path": path})
        return cls(Path(path))

    @property
    def armed(self) -> bool:
        """False once ownership has been released or the dir removed."""
        return self._armed

    def bind_server(self, server: StaticFileServer) -> None:
        """Stop server when this directory is removed."""
        self.servers.append(server)

    def release(self) -> OwnedTempDir:
        """Move ownership to a new guard; this one no longer removes anything."""
        if not self._armed:
            raise RuntimeError(f"temp dir {self.path} already released")
        self._armed = False
        servers, self.servers = self.servers, []
        return OwnedTempDir(self.path, servers)

    async def remove(self) -> None:
        """Stop bound servers, then remove the directory tree.

        Idempotent. Cleanup failures are logged, not raised.
        """
        if not self._armed:
            return
        self._armed = False

        for server in self.servers:
            try:
                await server.stop()
            except Exception as e:
                logger.warning(
                    "File server stop failed",
                    extra={"path": str(self.path), "error": str(e), "error_type": type(e).__name__},
                )
        self.servers = []

        try:
            await asyncio.to_thread(shutil.rmtree, self.path)
            logger.debug("Removed temp dir", extra={"path": str(self.path)})
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(
                "Temp dir removal error",
                extra={"path": str(self.path), "error": str(e), "error_type": type(e).__name__},
            )

    async def __aenter__(self) -> OwnedTempDir:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        # Shielded so a cancelled install still cleans up
        await asyncio.shield(self.remove())
