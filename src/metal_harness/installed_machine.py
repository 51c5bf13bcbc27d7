"""Handle for a machine running an install."""

from __future__ import annotations

from pathlib import Path

from metal_harness._logging import get_logger
from metal_harness.boot_signal import BootStartedResult
from metal_harness.builder import QemuInstance
from metal_harness.tempdir import OwnedTempDir

logger = get_logger(__name__)


class InstalledMachine:
    """A launched install VM plus the temp dir (and file servers) it uses.

    The handle owns the temp dir: destroy() stops the VM, then the servers,
    then removes the directory. boot_started resolves once the live system
    signals installer start (or fails to).
    """

    def __init__(self, instance: QemuInstance, tmpdir: OwnedTempDir, boot_started: BootStartedResult):
        self.instance: QemuInstance | None = instance
        self.boot_started = boot_started
        self._tmpdir = tmpdir

    @property
    def tempdir(self) -> Path:
        return self._tmpdir.path

    async def destroy(self) -> None:
        """Tear everything down. Idempotent."""
        try:
            if self.instance is not None:
                instance, self.instance = self.instance, None
                await self.boot_started.cancel()
                await instance.destroy()
                logger.debug("Install machine destroyed", extra={"tempdir": str(self._tmpdir.path)})
        finally:
            await self._tmpdir.remove()

    async def __aenter__(self) -> InstalledMachine:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.destroy()
