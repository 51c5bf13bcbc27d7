"""Shared pytest fixtures for metal-harness tests.

The QEMU boundary (builder, instance) is faked; everything else is real:
temp dirs, symlinks, the aiohttp file server, asyncio.StreamReader for the
boot-started channel. External tools are intercepted at run_tool.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from metal_harness import constants
from metal_harness.artifacts import LocalBuild
from metal_harness.config import InstallOptions
from metal_harness.disk import Disk
from metal_harness.ignition import Conf
from metal_harness.models import HostForwardPort

# ============================================================================
# QEMU Fakes
# ============================================================================


class FakeInstance:
    """QemuInstance whose process lifetime is driven by the test."""

    def __init__(self, address: str = "127.0.0.1:2222", address_failures: int = 0) -> None:
        self.exited = asyncio.Event()
        self.exit_error: Exception | None = None
        self.was_signaled = False
        self.destroyed = 0
        self.destroy_error: Exception | None = None
        self.boot_order_switches = 0
        self.switch_error: Exception | None = None
        self.address = address
        self.address_failures = address_failures
        self.address_calls = 0

    def exit(self, error: Exception | None = None, signaled: bool = False) -> None:
        self.exit_error = error
        self.was_signaled = signaled
        self.exited.set()

    async def wait(self) -> None:
        await self.exited.wait()
        if self.exit_error is not None:
            raise self.exit_error

    def signaled(self) -> bool:
        return self.was_signaled

    async def destroy(self) -> None:
        self.destroyed += 1
        if self.destroy_error is not None:
            raise self.destroy_error
        if not self.exited.is_set():
            self.exit(RuntimeError("signal: killed"), signaled=True)

    async def ssh_address(self) -> str:
        self.address_calls += 1
        if self.address_calls <= self.address_failures:
            raise OSError("no hostfwd for ssh yet")
        return self.address

    async def switch_boot_order(self) -> None:
        self.boot_order_switches += 1
        if self.switch_error is not None:
            raise self.switch_error


class FakeBuilder:
    """QemuBuilder recording everything the harness configures."""

    def __init__(self, instance: FakeInstance | None = None) -> None:
        self.memory_mib = 1024
        self.firmware = ""
        self.config_file = ""
        self.uuid = ""
        self.hostname = ""
        self.console_file = ""
        self.swtpm = True
        self.pdeathsig = True
        self.restrict_networking = False
        self.usermode_networking = False
        self.append_kernel_args = ""
        self.append_firstboot_kernel_args = ""

        self.instance = instance or FakeInstance()
        self.exec_error: Exception | None = None
        self.arch = ""
        self.args: list[str] = []
        self.boot_disk: Disk | None = None
        self.disk_specs: list[str] = []
        self.forwarded_ports: list[HostForwardPort] = []
        self.additional_nics = 0
        self.mounts: list[tuple[str, str, bool]] = []
        self.secure_execution: tuple[str, str] | None = None
        self.cex = False
        self.config: Conf | None = None
        self.isos: list[tuple[str, str, bool]] = []
        self.streams: dict[str, asyncio.StreamReader] = {}
        self.execs = 0
        self.closed = 0

    def set_architecture(self, arch: str) -> None:
        self.arch = arch

    def add_boot_disk(self, disk: Disk) -> None:
        self.boot_disk = disk

    def add_disks_from_specs(self, specs: list[str]) -> None:
        self.disk_specs.extend(specs)

    def enable_usermode_networking(self, ports: list[HostForwardPort], netdev_opts: str) -> None:
        self.usermode_networking = True
        self.forwarded_ports = list(ports)

    def add_additional_nics(self, count: int) -> None:
        self.additional_nics = count

    def mount_host(self, source: str, dest: str, readonly: bool) -> None:
        self.mounts.append((source, dest, readonly))

    def set_secure_execution(self, pubkey: str, hostkey: str, conf: Conf) -> None:
        self.secure_execution = (pubkey, hostkey)

    def add_cex_device(self) -> None:
        self.cex = True

    def append(self, *args: str) -> None:
        self.args.extend(args)

    def virtio_channel_read(self, name: str) -> asyncio.StreamReader:
        reader = asyncio.StreamReader()
        self.streams[name] = reader
        return reader

    def set_config(self, conf: Conf) -> None:
        self.config = conf

    def add_iso(self, path: str, opts: str, as_disk: bool) -> None:
        self.isos.append((path, opts, as_disk))

    async def exec(self) -> FakeInstance:
        self.execs += 1
        if self.exec_error is not None:
            raise self.exec_error
        return self.instance

    async def close(self) -> None:
        self.closed += 1

    @property
    def boot_stream(self) -> asyncio.StreamReader:
        return self.streams[constants.BOOT_STARTED_CHANNEL]


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


# ============================================================================
# Build Directory
# ============================================================================

ARTIFACTS: dict[str, str] = {
    "live-kernel": "fcos-live-kernel-x86_64",
    "live-initramfs": "fcos-live-initramfs.x86_64.img",
    "live-rootfs": "fcos-live-rootfs.x86_64.img",
    "live-iso": "fcos-live.x86_64.iso",
    "metal": "fcos-metal.x86_64.raw",
    "metal4k": "fcos-metal4k.x86_64.raw",
}


def write_build(build_dir: Path, *, in_meta: set[str] | None = None, on_disk: set[str] | None = None) -> Path:
    """Write a fake build dir: meta.json listing in_meta, files for on_disk."""
    in_meta = set(ARTIFACTS) if in_meta is None else in_meta
    on_disk = set(ARTIFACTS) if on_disk is None else on_disk
    build_dir.mkdir(parents=True, exist_ok=True)
    meta: dict[str, Any] = {
        "ostree-version": "41.20250101.dev.0",
        "buildartifacts": {name: {"path": ARTIFACTS[name], "sha256": "0" * 64} for name in sorted(in_meta)},
    }
    (build_dir / "meta.json").write_text(json.dumps(meta))
    for name in on_disk:
        (build_dir / ARTIFACTS[name]).write_bytes(f"<{name}>".encode())
    return build_dir


@pytest.fixture
def build_factory(tmp_path: Path) -> Callable[..., Any]:
    """Async factory: await build_factory(on_disk={...}) -> LocalBuild."""

    async def factory(**kwargs: Any) -> LocalBuild:
        return await LocalBuild.load(write_build(tmp_path / "build", **kwargs))

    return factory


@pytest.fixture
async def build(build_factory: Callable[..., Any]) -> LocalBuild:
    return await build_factory()


@pytest.fixture
def scratch(tmp_path: Path) -> Path:
    """tmp_root for install runs."""
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def outdir(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


@pytest.fixture
def options_factory(scratch: Path) -> Callable[..., InstallOptions]:
    def factory(**overrides: Any) -> InstallOptions:
        values: dict[str, Any] = {"arch": "x86_64", "tmp_root": scratch}
        values.update(overrides)
        return InstallOptions(**values)

    return factory


# ============================================================================
# External Tools
# ============================================================================


class ToolRecorder:
    """Stand-in for run_tool: records argv and emulates side effects."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.failures: dict[str, Exception] = {}

    def fail(self, binary: str, error: Exception) -> None:
        self.failures[binary] = error

    def binaries(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def __call__(self, *cmd: Any, operation: str | None = None) -> str:
        argv = [str(c) for c in cmd]
        self.calls.append(argv)
        if argv[0] in self.failures:
            raise self.failures[argv[0]]
        if argv[0] == "cp":
            shutil.copyfile(argv[-2], argv[-1])
        elif argv[0] == constants.GRUB2_MKNETDIR_BIN:
            net_dir = Path(argv[1].removeprefix("--net-directory="))
            (net_dir / "boot" / "grub2").mkdir(parents=True, exist_ok=True)
        return ""


@pytest.fixture
def tools(monkeypatch: pytest.MonkeyPatch) -> ToolRecorder:
    recorder = ToolRecorder()
    monkeypatch.setattr("metal_harness.pxe.run_tool", recorder)
    monkeypatch.setattr("metal_harness.iso.run_tool", recorder)
    return recorder


def temp_dirs(root: Path) -> list[Path]:
    return sorted(p for p in root.iterdir() if p.is_dir())
