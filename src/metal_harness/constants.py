"""Constants for metal-harness install flows and machine provisioning."""

from typing import Final

# ============================================================================
# Environment
# ============================================================================

TESTISO_DEBUG_ENV_VAR: Final[str] = "METAL_HARNESS_TESTISO_DEBUG"
"""Presence-only env var enabling verbose systemd kargs on install runs."""

DEFAULT_TMP_ROOT: Final[str] = "/var/tmp"
"""Install run temp dirs live here (same filesystem as builds so reflinks work)."""

# ============================================================================
# Networking
# ============================================================================

DEFAULT_QEMU_HOST_IPV4: Final[str] = "10.0.2.2"
"""Host address as seen from a QEMU usermode (slirp) guest; see `man qemu-kvm` -netdev."""

PXE_TFTP_IPV4: Final[str] = "192.168.76.2"
"""Host address on the alternate PXE subnet."""

PXE_ALT_SUBNET: Final[str] = "net=192.168.76.0/24,dhcpstart=192.168.76.9"
"""Usermode netdev options selecting the alternate PXE subnet."""

PXE_NETDEV_ID: Final[str] = "mynet0"
PXE_MAC_ADDRESS: Final[str] = "52:54:00:12:34:56"

SSH_GUEST_PORT: Final[int] = 22

# ============================================================================
# Boot progress signal
# ============================================================================

BOOT_STARTED_SIGNAL: Final[str] = "boot-started-OK"
"""Marker line the live system writes once coreos-installer starts."""

BOOT_STARTED_CHANNEL: Final[str] = "bootstarted"
"""virtio-serial port name carrying the marker."""

BOOT_SIGNAL_EOF_GRACE_SECONDS: Final[float] = 1.0
"""Delay before reporting EOF, letting the process watcher report a better cause."""

BOOT_STARTED_UNIT: Final[str] = f"""[Unit]
Description=TestISO Boot Started
Requires=dev-virtio\\x2dports-{BOOT_STARTED_CHANNEL}.device
OnFailure=emergency.target
OnFailureJobMode=isolate
[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/bin/sh -c '/usr/bin/echo {BOOT_STARTED_SIGNAL} >/dev/virtio-ports/{BOOT_STARTED_CHANNEL}'
[Install]
RequiredBy=coreos-installer.target
"""

# ============================================================================
# Kernel arguments
# ============================================================================

BASE_KARGS: Final[tuple[str, ...]] = (
    "rd.neednet=1",
    "ip=dhcp",
    "ignition.firstboot",
    "ignition.platform.id=metal",
)

DEBUG_KARGS: Final[tuple[str, ...]] = (
    "systemd.log_color=0",
    "systemd.log_level=debug",
    "systemd.journald.forward_to_console=1",
    "systemd.journald.max_level_console=debug",
)
"""Early-boot logging kargs; virtio log streams depend on guest services and can be incomplete."""

CONSOLE_KERNEL_ARGUMENT: Final[dict[str, str]] = {
    "x86_64": "ttyS0,115200n8",
    "ppc64le": "hvc0",
    "aarch64": "ttyAMA0",
    "s390x": "ttysclp0",
}

MULTIPATH_KARGS: Final[tuple[str, ...]] = (
    "rd.multipath=default",
    "root=/dev/disk/by-label/dm-mpath-root",
    "rw",
)

# ============================================================================
# Installer
# ============================================================================

INSTALLER_CONFIG_PATH: Final[str] = "/etc/coreos/installer.d/mantle.yaml"
POINTER_IGNITION_PATH: Final[str] = "/var/opt/pointer.ign"
DEFAULT_DEST_DEVICE: Final[str] = "/dev/vda"
MULTIPATH_DEST_DEVICE: Final[str] = "/dev/mapper/mpatha"

INSTALLER_DIRECTIVE_SKIP_ARCHES: Final[frozenset[str]] = frozenset({"s390x"})
"""coreos-installer on these arches rejects the console directive (coreos-installer#1171)."""

ISO_BOOTINDEX: Final[str] = "bootindex=3"

MULTIPATH_UNIT: Final[str] = """[Unit]
Description=TestISO Enable Multipath
Before=multipathd.service
DefaultDependencies=no
[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/usr/sbin/mpathconf --enable
[Install]
WantedBy=coreos-installer.target"""

MULTIPATH_WAIT_DROPIN: Final[str] = """[Unit]
Requires=dev-mapper-mpatha.device
After=dev-mapper-mpatha.device"""

# ============================================================================
# External tools
# ============================================================================

CP_REFLINK_BIN: Final[str] = "/usr/lib/coreos-assembler/cp-reflink"
MK_S390IMAGE_BIN: Final[str] = "/usr/bin/mk-s390image"
GRUB2_MKNETDIR_BIN: Final[str] = "grub2-mknetdir"
COREOS_INSTALLER_BIN: Final[str] = "coreos-installer"
SYSLINUX_DIR: Final[str] = "/usr/share/syslinux"
PXELINUX_IMAGES: Final[tuple[str, ...]] = ("pxelinux.0", "ldlinux.c32")

TOOL_STDERR_MAX_BYTES: Final[int] = 2000
"""Maximum stderr captured into ExternalToolError."""

# ============================================================================
# Machine provisioning
# ============================================================================

METAL_MEMORY_MIB: Final[int] = 4096
"""Default memory for install builders (coreos-installer needs headroom)."""

SECURE_EXECUTION_MEMORY_MIB: Final[int] = 4096

SSH_ADDRESS_MAX_ATTEMPTS: Final[int] = 6
SSH_ADDRESS_RETRY_SECONDS: Final[float] = 5.0

START_MACHINE_TIMEOUT_SECONDS: Final[float] = 300.0
"""Upper bound for the SSH banner handshake after launch."""

SSH_BANNER_PREFIX: Final[bytes] = b"SSH-"
