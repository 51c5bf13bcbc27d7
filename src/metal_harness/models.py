"""Data models for metal-harness."""

from dataclasses import dataclass
from enum import Enum

import yaml
from pydantic import BaseModel, ConfigDict, Field


class BootType(str, Enum):
    """How the firmware fetches the kernel in a PXE install."""

    PXE = "pxe"  # syslinux pxelinux.0 (or an s390x PXE image)
    GRUB = "grub"  # grub2 network boot directory


@dataclass(frozen=True, slots=True)
class KernelSetup:
    """Live kernel/initramfs/rootfs paths, relative to the build directory."""

    kernel: str
    initramfs: str
    rootfs: str


@dataclass(slots=True)
class PxeSetup:
    """Architecture-derived PXE boot parameters.

    boot_file is only known for grub up front; for syslinux it is filled in
    once the loader has been placed in the TFTP directory.
    """

    network_device: str
    boot_type: BootType
    tftp_ip: str
    boot_index: str = ""
    pxe_image_path: str = ""
    boot_file: str = ""


@dataclass(frozen=True, slots=True)
class HostForwardPort:
    """A usermode-networking port forward (host_port 0 = pick one)."""

    service: str
    host_port: int
    guest_port: int


class InstallerConfig(BaseModel):
    """coreos-installer config file dropped into the live environment.

    Serialized with the installer's key names; empty values are omitted.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    image_url: str = Field(default="", alias="image-url")
    ignition_file: str = Field(default="", alias="ignition-file")
    insecure: bool = False
    append_kargs: list[str] = Field(default_factory=list, alias="append-karg")
    copy_network: bool = Field(default=False, alias="copy-network")
    dest_device: str = Field(default="", alias="dest-device")
    console: list[str] = Field(default_factory=list)

    def to_yaml(self) -> str:
        data = {key: value for key, value in self.model_dump(by_alias=True).items() if value}
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
