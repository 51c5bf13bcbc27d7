"""Structural interfaces of the QEMU launch layer.

The harness never builds a QEMU command line itself. It drives a builder
(launch configuration), the instance the builder returns, and a line stream
read from a virtio-serial port. Anything matching these protocols works,
which is also how the tests substitute fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from metal_harness.disk import Disk
    from metal_harness.ignition import Conf
    from metal_harness.models import HostForwardPort


@runtime_checkable
class SignalStream(Protocol):
    """Line-oriented reader over a virtio-serial channel."""

    async def readline(self) -> bytes:
        """Read one line.

        Returns the line including its trailing newline; a result without a
        trailing newline (including b"") means the channel reached EOF.
        Raises OSError if reading fails.
        """
        ...


@runtime_checkable
class QemuInstance(Protocol):
    """A running QEMU process."""

    async def wait(self) -> None:
        """Wait for the process to exit. Raises if it exited abnormally."""
        ...

    def signaled(self) -> bool:
        """True if the process was terminated by a signal."""
        ...

    async def destroy(self) -> None:
        """Kill the process and release its resources."""
        ...

    async def ssh_address(self) -> str:
        """Host "ip:port" forwarded to the guest's SSH port.

        Raises while the forward is not yet known.
        """
        ...

    async def switch_boot_order(self) -> None:
        """Make the installed disk the first boot device."""
        ...


@runtime_checkable
class QemuBuilder(Protocol):
    """Launch configuration for one QEMU process.

    Attributes mirror the QEMU options the harness sets directly; methods
    add devices. exec() launches and returns the instance; close() releases
    builder-held resources (temp files, fds) and must always be called.
    """

    memory_mib: int
    firmware: str
    config_file: str
    uuid: str
    hostname: str
    console_file: str
    swtpm: bool
    pdeathsig: bool
    restrict_networking: bool
    usermode_networking: bool
    append_kernel_args: str
    append_firstboot_kernel_args: str

    def set_architecture(self, arch: str) -> None: ...

    def add_boot_disk(self, disk: Disk) -> None: ...

    def add_disks_from_specs(self, specs: list[str]) -> None: ...

    def enable_usermode_networking(self, ports: list[HostForwardPort], netdev_opts: str) -> None: ...

    def add_additional_nics(self, count: int) -> None: ...

    def mount_host(self, source: str, dest: str, readonly: bool) -> None: ...

    def set_secure_execution(self, pubkey: str, hostkey: str, conf: Conf) -> None: ...

    def add_cex_device(self) -> None: ...

    def append(self, *args: str) -> None:
        """Append raw QEMU arguments."""
        ...

    def virtio_channel_read(self, name: str) -> SignalStream:
        """Create a virtio-serial port and return a reader for it.

        Must be called before exec().
        """
        ...

    def set_config(self, conf: Conf) -> None:
        """Pass an Ignition config to the guest (fw_cfg / userdata)."""
        ...

    def add_iso(self, path: str, opts: str, as_disk: bool) -> None: ...

    async def exec(self) -> QemuInstance: ...

    async def close(self) -> None: ...
