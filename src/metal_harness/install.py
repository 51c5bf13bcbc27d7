"""Install entry point.

Example:
    ```python
    from metal_harness import Install, InstallOptions, LocalBuild
    from metal_harness.ignition import Conf

    build = await LocalBuild.load(Path("builds/latest/x86_64"))
    install = Install(build, configure_metal_builder(builder), InstallOptions.from_settings())
    async with await install.install_pxe([], Conf.empty(), target) as machine:
        await machine.boot_started.wait()
    ```
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from metal_harness import constants
from metal_harness.artifacts import LocalBuild
from metal_harness.builder import QemuBuilder
from metal_harness.config import InstallOptions
from metal_harness.ignition import Conf
from metal_harness.installed_machine import InstalledMachine
from metal_harness.iso import install_via_iso
from metal_harness.pxe import install_pxe


def configure_metal_builder(builder: QemuBuilder) -> QemuBuilder:
    """Apply bare metal defaults to a fresh builder."""
    # coreos-installer needs the headroom (fedora-coreos-tracker#388)
    builder.memory_mib = constants.METAL_MEMORY_MIB
    return builder


class Install:
    """Install runs against one build with one builder.

    A builder launches at most one VM, and both install methods close it,
    so use a fresh Install (and builder) per run.
    """

    def __init__(self, build: LocalBuild, builder: QemuBuilder, options: InstallOptions | None = None):
        self.build = build
        self.builder = builder
        self.options = options or InstallOptions.from_settings()

    async def install_pxe(
        self,
        kargs: Sequence[str],
        live_config: Conf,
        target_config: Conf,
        offline: bool = False,
    ) -> InstalledMachine:
        return await install_pxe(
            self.build, self.builder, self.options, kargs, live_config, target_config, offline=offline
        )

    async def install_via_iso(
        self,
        kargs: Sequence[str],
        live_config: Conf,
        target_config: Conf,
        outdir: Path,
        offline: bool = False,
        minimal: bool = False,
    ) -> InstalledMachine:
        return await install_via_iso(
            self.build,
            self.builder,
            self.options,
            kargs,
            live_config,
            target_config,
            outdir,
            offline=offline,
            minimal=minimal,
        )
