"""Host architecture detection and process wrappers.

Architecture names follow RPM conventions (x86_64, aarch64, ppc64le, s390x)
since that is what build metadata and boot tables are keyed on.
External tools are tracked through psutil so kills are PID-reuse safe.
"""

import asyncio
import contextlib
import platform
from functools import cache

import psutil


# uname -m spellings that differ from the RPM arch name
_MACHINE_ALIASES: dict[str, str] = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}


def normalize_arch(machine: str) -> str:
    """Map a `uname -m` style machine name to its RPM arch name.

    Unknown names are returned lowercased and unchanged so that callers can
    report them (e.g. as an unsupported PXE arch).
    """
    machine = machine.strip().lower()
    return _MACHINE_ALIASES.get(machine, machine)


@cache
def detect_host_arch() -> str:
    """Detect the current host architecture as an RPM arch name.

    Example:
        >>> detect_host_arch()
        'x86_64'
    """
    return normalize_arch(platform.machine())


class ToolProcess:
    """A running external tool (cp, grub2-mknetdir, coreos-installer, ...).

    The psutil handle is taken at spawn time so a kill after cancellation
    targets the tool we started even if its PID has since been recycled.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._handle: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self._handle = psutil.Process(proc.pid)

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        return await self._proc.communicate()

    async def wait(self) -> int:
        return await self._proc.wait()

    async def kill(self) -> None:
        """SIGKILL the tool if it is still alive."""
        if self._proc.returncode is not None:
            return
        if self._handle is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            return
        # psutil.Process.kill() checks the creation time before signalling
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            await asyncio.to_thread(self._handle.kill)
