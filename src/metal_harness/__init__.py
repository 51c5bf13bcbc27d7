"""metal-harness: bare metal install testing on QEMU.

Drives coreos-installer based installs (PXE network boot and live ISO) in
QEMU machines and provisions clusters of ordinary test machines. The QEMU
command line itself is built elsewhere; this library talks to it through the
QemuBuilder / QemuInstance protocols.

PXE install:
    ```python
    from metal_harness import Install, InstallOptions, LocalBuild, configure_metal_builder
    from metal_harness.ignition import Conf

    build = await LocalBuild.load(Path("builds/latest/x86_64"))
    install = Install(build, configure_metal_builder(new_builder()), InstallOptions.from_settings())
    async with await install.install_pxe([], Conf.empty(), target) as machine:
        await machine.boot_started.wait()  # installer started, disk now boots first
    ```

ISO install:
    ```python
    machine = await install.install_via_iso([], Conf.empty(), target, outdir, offline=True)
    ```

Requirements:
    - coreos-installer, grub2-mknetdir, syslinux (PXE on BIOS)
    - Python 3.12+

Debugging:
    METAL_HARNESS_TESTISO_DEBUG=1   verbose systemd kargs on install runs
    METAL_HARNESS_LOG_LEVEL=DEBUG   library log level
"""

from metal_harness.artifacts import BuildMeta, LocalBuild
from metal_harness.boot_signal import BootStartedResult, switch_boot_order_signal
from metal_harness.builder import QemuBuilder, QemuInstance, SignalStream
from metal_harness.cluster import Cluster, Flight, Machine
from metal_harness.config import ClusterOptions, InstallOptions, MachineOptions
from metal_harness.exceptions import (
    BootOrderSwitchError,
    BootSignalEofError,
    BootSignalError,
    BootSignalMismatchError,
    BootSignalReadError,
    DiskSpecError,
    ExternalToolError,
    HarnessError,
    InstallConfigError,
    InstallError,
    InstallInvariantError,
    MachineStartError,
    MachineUnreachableError,
    MissingArtifactError,
    PreconditionError,
    UnexpectedExitError,
    UnsupportedArchError,
    VmConfigError,
)
from metal_harness.install import Install, configure_metal_builder
from metal_harness.installed_machine import InstalledMachine
from metal_harness.settings import Settings

__all__ = [
    "BootOrderSwitchError",
    "BootSignalEofError",
    "BootSignalError",
    "BootSignalMismatchError",
    "BootSignalReadError",
    "BootStartedResult",
    "BuildMeta",
    "Cluster",
    "ClusterOptions",
    "DiskSpecError",
    "ExternalToolError",
    "Flight",
    "HarnessError",
    "Install",
    "InstallConfigError",
    "InstallError",
    "InstallInvariantError",
    "InstallOptions",
    "InstalledMachine",
    "LocalBuild",
    "Machine",
    "MachineOptions",
    "MachineStartError",
    "MachineUnreachableError",
    "MissingArtifactError",
    "PreconditionError",
    "QemuBuilder",
    "QemuInstance",
    "Settings",
    "SignalStream",
    "UnexpectedExitError",
    "UnsupportedArchError",
    "VmConfigError",
    "configure_metal_builder",
    "switch_boot_order_signal",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("metal-harness")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
