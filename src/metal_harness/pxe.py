"""PXE install flow.

Stages the live kernel/initramfs/rootfs and the metal image in a temp dir,
serves it over TFTP (QEMU usermode networking) and HTTP (aiohttp), writes the
boot loader config for the architecture and boots the VM from the network.
The live system runs coreos-installer against the served metal image and
signals over virtio-serial once the installer starts.

Phases:
    setup_pxe()           stage files, start the file server -> PxeRun
    render_pxe_kargs()    kernel command line for the live system
    complete_pxe_setup()  boot loader files (syslinux or grub)
    run_pxe()             network devices + launch
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

from metal_harness import constants
from metal_harness._logging import get_logger
from metal_harness.artifacts import LocalBuild
from metal_harness.boot_signal import switch_boot_order_signal
from metal_harness.builder import QemuBuilder, QemuInstance
from metal_harness.config import InstallOptions
from metal_harness.exceptions import UnsupportedArchError
from metal_harness.fileserver import StaticFileServer
from metal_harness.ignition import Conf, UnitState
from metal_harness.installed_machine import InstalledMachine
from metal_harness.kargs import (
    console_for_arch,
    join_kargs,
    render_base_kargs,
    render_debug_kargs,
    render_install_kargs,
)
from metal_harness.models import BootType, InstallerConfig, KernelSetup, PxeSetup
from metal_harness.staging import abs_symlink, concatenate, install_step, setup_metal_image
from metal_harness.subprocess_utils import run_tool
from metal_harness.tempdir import OwnedTempDir

logger = get_logger(__name__)

TMPDIR_PREFIX = "metal-harness-pxe"

_SYSLINUX_CONFIG = """DEFAULT pxeboot
TIMEOUT 20
PROMPT 0
LABEL pxeboot
    KERNEL {kernel}
    APPEND initrd={initramfs} {kargs}
"""

_GRUB_CONFIG = """default=0
timeout=1
menuentry "CoreOS (BIOS/UEFI)" {{
    echo "Loading kernel"
    linux /{kernel} {kargs}
    echo "Loading initrd"
    initrd {initramfs}
}}
"""


@dataclass
class PxeRun:
    """State of one PXE install attempt, produced by setup_pxe().

    tmpdir is still armed: whoever holds the PxeRun either releases it to an
    InstalledMachine or lets its guard remove it.
    """

    tmpdir: OwnedTempDir
    tftp_dir: Path
    base_url: str
    server: StaticFileServer
    kernel: KernelSetup
    pxe: PxeSetup
    metal_name: str


def resolve_pxe_setup(arch: str, firmware: str) -> PxeSetup:
    """Boot parameters for an architecture.

    Raises:
        UnsupportedArchError: No network boot support for arch
    """
    tftp_ip = constants.PXE_TFTP_IPV4
    match arch:
        case "x86_64" if firmware == "uefi":
            # bootindex 2: the empty disk falls through to the network on first boot
            return PxeSetup(
                network_device="e1000",
                boot_type=BootType.GRUB,
                tftp_ip=tftp_ip,
                boot_index="2",
                pxe_image_path="/boot/efi/EFI/fedora/grubx64.efi",
                boot_file="/boot/grub2/grubx64.efi",
            )
        case "x86_64":
            return PxeSetup(
                network_device="e1000",
                boot_type=BootType.PXE,
                tftp_ip=tftp_ip,
                pxe_image_path=f"{constants.SYSLINUX_DIR}/",
            )
        case "aarch64":
            return PxeSetup(
                network_device="virtio-net-pci",
                boot_type=BootType.GRUB,
                tftp_ip=tftp_ip,
                boot_index="1",
                pxe_image_path="/boot/efi/EFI/fedora/grubaa64.efi",
                boot_file="/boot/grub2/grubaa64.efi",
            )
        case "ppc64le":
            return PxeSetup(
                network_device="virtio-net-pci",
                boot_type=BootType.GRUB,
                tftp_ip=tftp_ip,
                boot_file="/boot/grub2/powerpc-ieee1275/core.elf",
            )
        case "s390x":
            # No prebuilt loader; complete_pxe_setup() synthesizes one
            return PxeSetup(
                network_device="virtio-net-ccw",
                boot_type=BootType.PXE,
                tftp_ip=constants.DEFAULT_QEMU_HOST_IPV4,
                boot_index="1",
            )
        case _:
            raise UnsupportedArchError(f"Unsupported arch {arch}", {"arch": arch, "firmware": firmware})


def installer_directive(arch: str, debug: bool) -> str | None:
    """coreos-installer config for the live system, or None where unsupported."""
    if arch in constants.INSTALLER_DIRECTIVE_SKIP_ARCHES:
        return None
    return InstallerConfig(console=[console_for_arch(arch)], append_kargs=render_debug_kargs(debug)).to_yaml()


async def setup_pxe(
    build: LocalBuild,
    options: InstallOptions,
    kernel: KernelSetup,
    live_config: Conf,
    target_config: Conf,
    firmware: str,
) -> PxeRun:
    """Stage a PXE install in a fresh temp dir and start serving it.

    Does not modify live_config or target_config. On failure nothing is left
    behind; on success the returned PxeRun owns the temp dir and server.

    Raises:
        MissingArtifactError: Metal image not built
        UnsupportedArchError: No boot table entry for options.arch
    """
    metal_artifact = build.metal_artifact(options.native_4k)
    await build.check_artifacts_exist([metal_artifact])
    pxe = resolve_pxe_setup(options.arch, firmware)

    async with await OwnedTempDir.create(options.tmp_root, TMPDIR_PREFIX) as tmp:
        tftp_dir = tmp.path / "tftp"
        await aiofiles.os.mkdir(tftp_dir)

        await target_config.write_file(tftp_dir / "config.ign")
        live = live_config.copy()
        live.add_autologin()
        live.add_systemd_unit("boot-started.service", constants.BOOT_STARTED_UNIT, UnitState.ENABLE)
        await live.write_file(tftp_dir / "pxe-live.ign")

        for name in (kernel.kernel, kernel.initramfs, kernel.rootfs):
            await abs_symlink(build.dir / name, tftp_dir / name)
        if options.pxe_append_rootfs:
            initrd = tftp_dir / kernel.initramfs
            await aiofiles.os.remove(initrd)
            await concatenate(initrd, build.dir / kernel.initramfs, build.dir / kernel.rootfs)

        metal_name = await setup_metal_image(build.dir, build.artifact_path(metal_artifact), tftp_dir)

        server = StaticFileServer(tftp_dir)
        await server.start()
        tmp.bind_server(server)
        base_url = f"http://{pxe.tftp_ip}:{server.port}"
        logger.info("PXE install staged", extra={"tftp_dir": str(tftp_dir), "base_url": base_url})

        return PxeRun(
            tmpdir=tmp.release(),
            tftp_dir=tftp_dir,
            base_url=base_url,
            server=server,
            kernel=kernel,
            pxe=pxe,
            metal_name=metal_name,
        )


def render_pxe_kargs(run: PxeRun, kargs: Sequence[str], options: InstallOptions, offline: bool) -> list[str]:
    """Full live kernel command line, in boot loader order."""
    args = render_base_kargs(options.arch)
    args += render_debug_kargs(options.debug)
    args += kargs
    args.append(f"ignition.config.url={run.base_url}/pxe-live.ign")
    args += render_install_kargs(run.base_url, run.metal_name, offline=offline, insecure=options.insecure)
    if run.kernel.rootfs and not options.pxe_append_rootfs:
        args.append(f"coreos.live.rootfs_url={run.base_url}/{run.kernel.rootfs}")
    return args


async def _write_text(path: Path, text: str) -> None:
    async with aiofiles.open(path, "w") as f:
        await f.write(text)


async def complete_pxe_setup(run: PxeRun, kargs: Sequence[str], arch: str) -> PxeSetup:
    """Write the boot loader and its config into the TFTP dir.

    Returns run.pxe with boot_file resolved.

    Raises:
        ExternalToolError: grub2-mknetdir, cp-reflink or mk-s390image failed
    """
    kargs_str = join_kargs(kargs)
    tftp_dir = run.tftp_dir
    kern = run.kernel

    if run.pxe.boot_type == BootType.PXE:
        config_dir = tftp_dir / "pxelinux.cfg"
        with install_step(f"creating dir {config_dir}"):
            await aiofiles.os.mkdir(config_dir)
        if arch == "s390x":
            config = kargs_str
        else:
            config = _SYSLINUX_CONFIG.format(kernel=kern.kernel, initramfs=kern.initramfs, kargs=kargs_str)
        config_path = config_dir / "default"
        with install_step(f"writing file {config_path}"):
            await _write_text(config_path, config)

        loader = constants.PXELINUX_IMAGES[0]
        if not run.pxe.pxe_image_path:
            await run_tool(
                constants.MK_S390IMAGE_BIN,
                tftp_dir / kern.kernel,
                "-r",
                tftp_dir / kern.initramfs,
                "-p",
                config_path,
                tftp_dir / loader,
                operation="running mk-s390image",
            )
        else:
            for image in constants.PXELINUX_IMAGES:
                src = Path(constants.SYSLINUX_DIR) / image
                await run_tool(
                    constants.CP_REFLINK_BIN,
                    src,
                    tftp_dir,
                    operation=f"running cp-reflink {src} {tftp_dir}",
                )
        return dataclasses.replace(run.pxe, boot_file=f"/{loader}")

    await run_tool(
        constants.GRUB2_MKNETDIR_BIN,
        f"--net-directory={tftp_dir}",
        operation="running grub2-mknetdir",
    )
    grub_dir = tftp_dir / "boot" / "grub2"
    if run.pxe.pxe_image_path:
        await run_tool(
            constants.CP_REFLINK_BIN,
            run.pxe.pxe_image_path,
            grub_dir,
            operation=f"running cp-reflink {run.pxe.pxe_image_path} {grub_dir}",
        )
    with install_step("writing grub.cfg"):
        await _write_text(
            grub_dir / "grub.cfg",
            _GRUB_CONFIG.format(kernel=kern.kernel, kargs=kargs_str, initramfs=kern.initramfs),
        )
    return run.pxe


def pxe_qemu_args(tftp_dir: Path, pxe: PxeSetup) -> list[str]:
    """QEMU arguments for the PXE network device and its usermode backend."""
    args: list[str] = []
    netdev = f"{pxe.network_device},netdev={constants.PXE_NETDEV_ID},mac={constants.PXE_MAC_ADDRESS}"
    if pxe.boot_index:
        netdev += f",bootindex={pxe.boot_index}"
    else:
        args += ["-boot", "once=n"]
    args += ["-device", netdev]

    usernetdev = f"user,id={constants.PXE_NETDEV_ID},tftp={tftp_dir},bootfile={pxe.boot_file}"
    if pxe.tftp_ip != constants.DEFAULT_QEMU_HOST_IPV4:
        usernetdev += f",{constants.PXE_ALT_SUBNET}"
    args += ["-netdev", usernetdev]
    return args


async def run_pxe(builder: QemuBuilder, tftp_dir: Path, pxe: PxeSetup) -> QemuInstance:
    builder.append(*pxe_qemu_args(tftp_dir, pxe))
    return await builder.exec()


async def install_pxe(
    build: LocalBuild,
    builder: QemuBuilder,
    options: InstallOptions,
    kargs: Sequence[str],
    live_config: Conf,
    target_config: Conf,
    offline: bool = False,
) -> InstalledMachine:
    """Boot the live system over PXE and install the metal image to disk.

    Returns as soon as QEMU is running; watch `boot_started` on the result
    for installer start. The builder is closed before returning.

    Raises:
        MissingArtifactError: live kernel/rootfs or metal image missing
        UnsupportedArchError: No boot table entry for options.arch
        InstallError: Setup or launch failed ("testing live installer: ...")
    """
    await build.check_artifacts_exist(["live-kernel", "live-rootfs"])

    live = live_config.copy()
    directive = installer_directive(options.arch, options.debug)
    if directive is not None:
        live.add_file(constants.INSTALLER_CONFIG_PATH, directive, 0o644)

    try:
        with install_step("testing live installer"):
            with install_step("setting up install"):
                run = await setup_pxe(
                    build, options, build.kernel_setup(), live, target_config.copy(), builder.firmware
                )

            async with run.tmpdir:
                with install_step("setting up bootstarted virtio-serial channel"):
                    stream = builder.virtio_channel_read(constants.BOOT_STARTED_CHANNEL)

                live_kargs = render_pxe_kargs(run, kargs, options, offline)
                with install_step("completing PXE setup"):
                    pxe = await complete_pxe_setup(run, live_kargs, options.arch)
                with install_step("running PXE install"):
                    instance = await run_pxe(builder, run.tftp_dir, pxe)

                machine = InstalledMachine(
                    instance,
                    run.tmpdir.release(),
                    switch_boot_order_signal(instance, stream),
                )
    finally:
        await asyncio.shield(builder.close())

    logger.info("PXE install launched", extra={"tempdir": str(machine.tempdir), "boot_type": pxe.boot_type.value})
    return machine
