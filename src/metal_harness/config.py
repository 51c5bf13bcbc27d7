"""Install and machine configuration for metal-harness.

InstallOptions carries the mode flags of one install run, ClusterOptions the
options shared by every machine of a flight, and MachineOptions the
per-machine overrides.

Example:
    ```python
    from metal_harness import Install, InstallOptions

    # Defaults resolved from the environment (METAL_HARNESS_*)
    options = InstallOptions.from_settings(native_4k=True)
    install = Install(build, builder, options)
    machine = await install.install_pxe([], live, target)
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from metal_harness import constants
from metal_harness.models import HostForwardPort
from metal_harness.platform_utils import detect_host_arch
from metal_harness.settings import Settings


class InstallOptions(BaseModel):
    """Mode flags for an install run.

    Immutable: the install flows never write back into their options.

    Attributes:
        insecure: Skip image signature verification in coreos-installer.
        native_4k: Install the 4K-native metal image (metal4k artifact).
        multipath: Install onto a multipath device (/dev/mapper/mpatha).
        pxe_append_rootfs: Append the rootfs to the initramfs instead of
            having the live system fetch it over HTTP.
        nm_keyfiles: NetworkManager keyfiles (name -> contents) embedded in
            the ISO and copied to the installed system.
        debug: Add verbose systemd/journald kargs. Use from_settings() to
            default this from METAL_HARNESS_TESTISO_DEBUG.
        arch: Target architecture (RPM name). Default: host architecture.
        tmp_root: Parent of the per-run temporary directories.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    insecure: bool = False
    native_4k: bool = False
    multipath: bool = False
    pxe_append_rootfs: bool = False
    nm_keyfiles: dict[str, str] = Field(default_factory=dict)
    debug: bool = False
    arch: str = Field(default_factory=detect_host_arch)
    tmp_root: Path = Path(constants.DEFAULT_TMP_ROOT)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> InstallOptions:
        """Build options with defaults taken from the process environment."""
        settings = settings or Settings()
        values: dict[str, Any] = {"debug": settings.debug_kargs, "tmp_root": settings.tmp_root}
        values.update(overrides)
        return cls(**values)


class ClusterOptions(BaseModel):
    """Options shared by every machine in a flight.

    Attributes:
        arch: Guest architecture (RPM name).
        firmware: Firmware type ("bios", "uefi", "uefi-secure"...). Empty
            lets the builder pick.
        memory: Memory in MiB as given on the command line. Empty uses the
            builder default. Kept as a string so that a bad value surfaces
            as VmConfigError at machine creation.
        native_4k: Use 4K-native sectors for the boot disk.
        disk_512e: Use 512-byte logical / 4K physical sectors.
        multipath_disk: Attach the boot disk as multipath.
        nvme: Attach the boot disk over NVMe.
        disk_size: Boot disk size (e.g. "20G").
        disk_image: Boot disk backing file.
        bind_ro: Host paths mounted read-only into the guest at
            /kola/host/<path>.
        swtpm: Attach a software TPM.
        secure_execution: Boot with IBM Secure Execution (s390x).
        secure_execution_ignition_pubkey: Key the Ignition config is encrypted to.
        secure_execution_hostkey: Host key document.
        cex: Attach a crypto express device (s390x).
        output_dir: Root of the per-machine working directories.
        internet_access: When False, guests run with restricted networking.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    arch: str = Field(default_factory=detect_host_arch)
    firmware: str = ""
    memory: str = ""
    native_4k: bool = False
    disk_512e: bool = False
    multipath_disk: bool = False
    nvme: bool = False
    disk_size: str = ""
    disk_image: str = ""
    bind_ro: tuple[str, ...] = ()
    swtpm: bool = True
    secure_execution: bool = False
    secure_execution_ignition_pubkey: str = ""
    secure_execution_hostkey: str = ""
    cex: bool = False
    output_dir: Path = Path("_kola_temp")
    internet_access: bool = False


class MachineOptions(BaseModel):
    """Per-machine overrides of the flight options."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Not supported on QEMU; rejected before anything is created
    instance_type: str = ""
    firmware: str = ""
    min_memory: int = Field(default=0, ge=0, description="Memory floor in MiB")
    min_disk_size: int = Field(default=0, ge=0, description="Boot disk floor in GiB")
    primary_disk: str = ""
    additional_disks: tuple[str, ...] = ()
    additional_nics: int = Field(default=0, ge=0)
    multipath_disk: bool = False
    nvme: bool = False
    cex: bool = False
    host_forward_ports: tuple[HostForwardPort, ...] = ()
    append_kernel_args: str = ""
    append_firstboot_kernel_args: str = ""
    override_backing_file: str = ""
    skip_start_machine: bool = False
    disable_pdeathsig: bool = False
