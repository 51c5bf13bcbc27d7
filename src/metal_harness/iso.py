"""Live ISO install flow.

Copies the live ISO, customizes it with coreos-installer (minimal ISO
extraction, NetworkManager keyfiles, kernel arguments) and boots it with a
live Ignition config that carries the installer directive and the target
config (or a pointer config fetching it from the host).
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence
from pathlib import Path

import aiofiles

from metal_harness import constants
from metal_harness._logging import get_logger
from metal_harness.artifacts import LocalBuild
from metal_harness.boot_signal import switch_boot_order_signal
from metal_harness.builder import QemuBuilder
from metal_harness.config import InstallOptions
from metal_harness.exceptions import InstallConfigError, InstallInvariantError
from metal_harness.fileserver import StaticFileServer
from metal_harness.ignition import Conf, UnitState
from metal_harness.installed_machine import InstalledMachine
from metal_harness.kargs import console_for_arch, render_debug_kargs
from metal_harness.models import InstallerConfig
from metal_harness.staging import install_step, setup_metal_image
from metal_harness.subprocess_utils import run_tool
from metal_harness.tempdir import OwnedTempDir

logger = get_logger(__name__)

TMPDIR_PREFIX = "metal-harness-iso"


def build_installer_config(options: InstallOptions) -> InstallerConfig:
    """Installer directive before any run-specific fields are known."""
    config = InstallerConfig(
        ignition_file=constants.POINTER_IGNITION_PATH,
        dest_device=constants.DEFAULT_DEST_DEVICE,
        append_kargs=render_debug_kargs(options.debug),
    )
    if options.arch not in constants.INSTALLER_DIRECTIVE_SKIP_ARCHES:
        config.console = [console_for_arch(options.arch)]
    if options.multipath:
        # There is only ever one multipath device
        config.dest_device = constants.MULTIPATH_DEST_DEVICE
        config.append_kargs += constants.MULTIPATH_KARGS
    return config


async def _write_keyfile(path: Path, contents: str) -> None:
    async with aiofiles.open(path, "w") as f:
        await f.write(contents)
    await asyncio.to_thread(os.chmod, path, 0o600)


async def install_via_iso(
    build: LocalBuild,
    builder: QemuBuilder,
    options: InstallOptions,
    kargs: Sequence[str],
    live_config: Conf,
    target_config: Conf,
    outdir: Path,
    offline: bool = False,
    minimal: bool = False,
) -> InstalledMachine:
    """Boot a customized live ISO that installs the metal image to disk.

    Debug copies of the configs (config-target.ign, config-target-pointer.ign,
    config-live.ign) are written to outdir. Returns as soon as QEMU is
    running; the builder is closed before returning.

    Raises:
        InstallInvariantError: minimal and offline both requested
        InstallConfigError: NetworkManager keyfiles requested offline, or a
            keyfile name that is not a plain file name
        MissingArtifactError: live ISO or metal image missing
        ExternalToolError: cp or coreos-installer failed
        InstallError: Staging failed
    """
    if minimal and offline:
        raise InstallInvariantError("Can't run minimal install offline")
    if offline and options.nm_keyfiles:
        raise InstallConfigError("Cannot use NetworkManager keyfiles with offline mode")
    for name in options.nm_keyfiles:
        if not name or name in (".", "..") or "/" in name or os.sep in name:
            raise InstallConfigError(f"Invalid NetworkManager keyfile name '{name}'", {"keyfile": name})

    metal_artifact = build.metal_artifact(options.native_4k)
    await build.check_artifacts_exist(["live-iso", metal_artifact])

    installer_config = build_installer_config(options)
    iso_kargs = render_debug_kargs(options.debug) + list(kargs)
    live = live_config.copy()
    target = target_config.copy()

    try:
        async with await OwnedTempDir.create(options.tmp_root, TMPDIR_PREFIX) as tmp:
            with install_step("writing target config"):
                await target.write_file(tmp.path / "target.ign")
                await target.write_file(outdir / "config-target.ign")

            # Both temp dirs live under tmp_root, so QEMU's own copy reflinks too
            iso_path = tmp.path / "install.iso"
            await run_tool(
                "cp", "--reflink=auto", build.dir / build.artifact_path("live-iso"), iso_path, operation="copying iso"
            )
            with install_step("setting permissions on iso"):
                await asyncio.to_thread(os.chmod, iso_path, 0o644)

            metal_name = await setup_metal_image(build.dir, build.artifact_path(metal_artifact), tmp.path)

            if offline:
                # The installed system must boot offline too, so embed the real thing
                serialized_target = target.to_string()
            else:
                server = StaticFileServer(tmp.path)
                await server.start()
                tmp.bind_server(server)
                base_url = f"http://{constants.DEFAULT_QEMU_HOST_IPV4}:{server.port}"

                if minimal:
                    # Install still goes through osmet; only the rootfs is fetched
                    minimal_iso = tmp.path / "minimal.iso"
                    await run_tool(
                        constants.COREOS_INSTALLER_BIN,
                        "iso",
                        "extract",
                        "minimal-iso",
                        iso_path,
                        minimal_iso,
                        "--output-rootfs",
                        tmp.path / "rootfs.img",
                        "--rootfs-url",
                        f"{base_url}/rootfs.img",
                        operation="running coreos-installer iso extract minimal",
                    )
                    iso_path = minimal_iso
                else:
                    installer_config.image_url = f"{base_url}/{metal_name}"

                pointer = Conf.empty()
                pointer.add_config_source(f"{base_url}/target.ign")
                serialized_target = pointer.to_string()
                with install_step("writing pointer config"):
                    await pointer.write_file(outdir / "config-target-pointer.ign")

            if options.nm_keyfiles:
                keyfile_args: list[str | Path] = []
                for name, contents in sorted(options.nm_keyfiles.items()):
                    path = tmp.path / name
                    with install_step(f"writing keyfile {name}"):
                        await _write_keyfile(path, contents)
                    keyfile_args += ["--keyfile", path]
                await run_tool(
                    constants.COREOS_INSTALLER_BIN,
                    "iso",
                    "network",
                    "embed",
                    iso_path,
                    *keyfile_args,
                    operation="running coreos-installer iso network embed",
                )
                installer_config.copy_network = True
                # Force initrd networking so the embedded keyfile is exercised
                iso_kargs.append("rd.neednet=1")

            if iso_kargs:
                append_args: list[str] = []
                for karg in iso_kargs:
                    append_args += ["--append", karg]
                await run_tool(
                    constants.COREOS_INSTALLER_BIN,
                    "iso",
                    "kargs",
                    "modify",
                    iso_path,
                    *append_args,
                    operation="running coreos-installer iso kargs",
                )

            installer_config.insecure = options.insecure

            live.add_systemd_unit("boot-started.service", constants.BOOT_STARTED_UNIT, UnitState.ENABLE)
            live.add_file(installer_config.ignition_file, serialized_target, 0o644)
            live.add_file(constants.INSTALLER_CONFIG_PATH, installer_config.to_yaml(), 0o644)
            live.add_autologin()
            if options.multipath:
                live.add_systemd_unit(
                    "coreos-installer-multipath.service", constants.MULTIPATH_UNIT, UnitState.ENABLE
                )
                live.add_systemd_unit_dropin(
                    "coreos-installer.service", "wait-for-mpath-target.conf", constants.MULTIPATH_WAIT_DROPIN
                )

            with install_step("setting up bootstarted virtio-serial channel"):
                stream = builder.virtio_channel_read(constants.BOOT_STARTED_CHANNEL)
            builder.set_config(live)
            with install_step("writing live config"):
                await live.write_file(outdir / "config-live.ign")

            builder.add_iso(str(iso_path), constants.ISO_BOOTINDEX, False)
            # No default NIC is created without usermode networking
            if not offline:
                builder.usermode_networking = True

            instance = await builder.exec()
            machine = InstalledMachine(instance, tmp.release(), switch_boot_order_signal(instance, stream))
    finally:
        await asyncio.shield(builder.close())

    logger.info(
        "ISO install launched",
        extra={"tempdir": str(machine.tempdir), "offline": offline, "minimal": minimal},
    )
    return machine
