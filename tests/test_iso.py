"""Tests for the live ISO install flow.

The ISO copy is real (the `cp` argv is replayed with shutil); coreos-installer
invocations are recorded by the `tools` fixture.
"""

from __future__ import annotations

import json
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import aiohttp
import pytest
import yaml

from metal_harness import constants
from metal_harness.artifacts import LocalBuild
from metal_harness.config import InstallOptions
from metal_harness.exceptions import (
    ExternalToolError,
    InstallConfigError,
    InstallError,
    InstallInvariantError,
    MissingArtifactError,
)
from metal_harness.ignition import Conf
from metal_harness.install import Install
from metal_harness.iso import build_installer_config
from tests.conftest import ARTIFACTS, FakeBuilder, ToolRecorder, temp_dirs

TARGET = '{"ignition":{"version":"3.4.0"},"passwd":{"users":[{"name":"core"}]}}'


def _file_contents(conf: Conf, path: str) -> str:
    doc = json.loads(conf.to_string())
    for entry in doc["storage"]["files"]:
        if entry["path"] == path:
            return unquote(entry["contents"]["source"].removeprefix("data:,"))
    raise KeyError(path)


def _directive(builder: FakeBuilder) -> dict[str, Any]:
    assert builder.config is not None
    return yaml.safe_load(_file_contents(builder.config, constants.INSTALLER_CONFIG_PATH))


# ============================================================================
# Installer Directive
# ============================================================================


class TestBuildInstallerConfig:
    def test_defaults(self) -> None:
        config = build_installer_config(InstallOptions(arch="x86_64"))
        assert config.ignition_file == constants.POINTER_IGNITION_PATH
        assert config.dest_device == "/dev/vda"
        assert config.console == ["ttyS0,115200n8"]
        assert config.append_kargs == []

    def test_multipath(self) -> None:
        config = build_installer_config(InstallOptions(arch="x86_64", multipath=True))
        assert config.dest_device == "/dev/mapper/mpatha"
        assert config.append_kargs == ["rd.multipath=default", "root=/dev/disk/by-label/dm-mpath-root", "rw"]

    def test_debug_then_multipath(self) -> None:
        config = build_installer_config(InstallOptions(arch="x86_64", multipath=True, debug=True))
        assert config.append_kargs == [*constants.DEBUG_KARGS, *constants.MULTIPATH_KARGS]

    def test_no_console_on_s390x(self) -> None:
        assert build_installer_config(InstallOptions(arch="s390x")).console == []


# ============================================================================
# Option Checks
# ============================================================================


class TestInstallViaIsoChecks:
    """Conflicting options fail before anything is created."""

    async def test_minimal_offline_rejected(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        with pytest.raises(InstallInvariantError, match="Can't run minimal install offline"):
            await Install(build, builder, options_factory()).install_via_iso(
                [], Conf.empty(), Conf.empty(), outdir, offline=True, minimal=True
            )
        assert temp_dirs(scratch) == []
        assert tools.calls == []
        assert builder.execs == 0

    async def test_keyfiles_offline_rejected(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        options = options_factory(nm_keyfiles={"eth0.nmconnection": "[connection]\n"})
        with pytest.raises(InstallConfigError, match="NetworkManager keyfiles"):
            await Install(build, builder, options).install_via_iso([], Conf.empty(), Conf.empty(), outdir, offline=True)
        assert temp_dirs(scratch) == []
        assert tools.calls == []

    @pytest.mark.parametrize("name", ["../eth0.nmconnection", "nm/eth0.nmconnection", "..", ""])
    async def test_keyfile_name_must_be_plain(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
        name: str,
    ) -> None:
        options = options_factory(nm_keyfiles={name: "[connection]\n"})
        with pytest.raises(InstallConfigError, match="Invalid NetworkManager keyfile name"):
            await Install(build, builder, options).install_via_iso([], Conf.empty(), Conf.empty(), outdir)
        assert temp_dirs(scratch) == []
        assert tools.calls == []

    @pytest.mark.parametrize("missing", ["live-iso", "metal"])
    async def test_missing_artifact(
        self,
        build_factory: Callable[..., Any],
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
        missing: str,
    ) -> None:
        build = await build_factory(on_disk=set(ARTIFACTS) - {missing})
        with pytest.raises(MissingArtifactError) as exc_info:
            await Install(build, builder, options_factory()).install_via_iso([], Conf.empty(), Conf.empty(), outdir)
        assert exc_info.value.artifact == missing
        assert temp_dirs(scratch) == []


# ============================================================================
# Offline
# ============================================================================


class TestOfflineInstall:
    """Everything the installed system needs is inside the ISO."""

    async def test_target_embedded(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.from_string(TARGET), outdir, offline=True
        )
        try:
            assert builder.config is not None
            assert json.loads(_file_contents(builder.config, constants.POINTER_IGNITION_PATH)) == json.loads(TARGET)
            assert "image-url" not in _directive(builder)
            assert not (outdir / "config-target-pointer.ign").exists()
            assert builder.usermode_networking is False
        finally:
            await machine.destroy()

    async def test_iso_copied_and_attached(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir, offline=True
        )
        try:
            iso = machine.tempdir / "install.iso"
            assert tools.calls[0] == [
                "cp",
                "--reflink=auto",
                str(build.dir / ARTIFACTS["live-iso"]),
                str(iso),
            ]
            assert iso.read_bytes() == b"<live-iso>"
            assert stat.S_IMODE(iso.stat().st_mode) == 0o644
            assert builder.isos == [(str(iso), "bootindex=3", False)]
            assert (machine.tempdir / ARTIFACTS["metal"]).is_symlink()
            # No kargs requested, no ISO customization
            assert tools.binaries() == ["cp"]
            assert builder.execs == 1
            assert builder.closed == 1
        finally:
            await machine.destroy()


# ============================================================================
# Networked
# ============================================================================


class TestNetworkedInstall:
    """The installer fetches the image and target config from the host."""

    async def test_pointer_and_image_url(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.from_string(TARGET), outdir
        )
        try:
            image_url = _directive(builder)["image-url"]
            assert image_url.startswith("http://10.0.2.2:")
            assert image_url.endswith(f"/{ARTIFACTS['metal']}")
            base_url = image_url.rsplit("/", 1)[0]

            assert builder.config is not None
            pointer = json.loads(_file_contents(builder.config, constants.POINTER_IGNITION_PATH))
            assert pointer["ignition"]["config"]["merge"] == [{"source": f"{base_url}/target.ign"}]
            assert json.loads((outdir / "config-target-pointer.ign").read_text()) == pointer
            assert builder.usermode_networking is True

            port = int(base_url.rsplit(":", 1)[1])
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{port}/target.ign") as resp:
                    assert resp.status == 200
                    assert json.loads(await resp.text()) == json.loads(TARGET)
        finally:
            await machine.destroy()

    async def test_minimal_iso(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        """Minimal ISO: rootfs extracted and served, no image URL."""
        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir, minimal=True
        )
        try:
            (extract,) = [c for c in tools.calls if c[1:3] == ["iso", "extract"]]
            assert extract[1:5] == ["iso", "extract", "minimal-iso", str(machine.tempdir / "install.iso")]
            assert extract[5] == str(machine.tempdir / "minimal.iso")
            assert extract[6:8] == ["--output-rootfs", str(machine.tempdir / "rootfs.img")]
            assert extract[8] == "--rootfs-url"
            assert extract[9].startswith("http://10.0.2.2:") and extract[9].endswith("/rootfs.img")
            assert builder.isos[0][0] == str(machine.tempdir / "minimal.iso")
            assert "image-url" not in _directive(builder)
        finally:
            await machine.destroy()

    async def test_keyfiles(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        """Keyfiles are embedded in name order and copied to the target."""
        keyfiles = {
            "eth1.nmconnection": "[connection]\nid=eth1\n",
            "eth0.nmconnection": "[connection]\nid=eth0\n",
        }
        machine = await Install(build, builder, options_factory(nm_keyfiles=keyfiles)).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir
        )
        try:
            iso = str(machine.tempdir / "install.iso")
            eth0 = machine.tempdir / "eth0.nmconnection"
            eth1 = machine.tempdir / "eth1.nmconnection"
            embed = [c for c in tools.calls if c[1:4] == ["iso", "network", "embed"]]
            assert embed == [
                [
                    constants.COREOS_INSTALLER_BIN,
                    "iso",
                    "network",
                    "embed",
                    iso,
                    "--keyfile",
                    str(eth0),
                    "--keyfile",
                    str(eth1),
                ]
            ]
            assert eth0.read_text() == keyfiles["eth0.nmconnection"]
            assert stat.S_IMODE(eth0.stat().st_mode) == 0o600

            assert _directive(builder)["copy-network"] is True
            modify = [c for c in tools.calls if c[1:4] == ["iso", "kargs", "modify"]]
            assert modify == [[constants.COREOS_INSTALLER_BIN, "iso", "kargs", "modify", iso, "--append", "rd.neednet=1"]]
        finally:
            await machine.destroy()


# ============================================================================
# Customization
# ============================================================================


class TestIsoCustomization:
    async def test_kargs_appended_in_order(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        """Debug kargs first, then the caller's."""
        machine = await Install(build, builder, options_factory(debug=True)).install_via_iso(
            ["foo=bar"], Conf.empty(), Conf.empty(), outdir, offline=True
        )
        try:
            (modify,) = [c for c in tools.calls if c[1:4] == ["iso", "kargs", "modify"]]
            appended = modify[6::2]
            assert modify[5::2] == ["--append"] * len(appended)
            assert appended == [*constants.DEBUG_KARGS, "foo=bar"]
            assert _directive(builder)["append-karg"] == list(constants.DEBUG_KARGS)
        finally:
            await machine.destroy()

    async def test_multipath(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        """Multipath: mapper destination, multipath kargs, mpath units."""
        machine = await Install(build, builder, options_factory(multipath=True)).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir, offline=True
        )
        try:
            directive = _directive(builder)
            assert directive["dest-device"] == "/dev/mapper/mpatha"
            assert directive["append-karg"] == list(constants.MULTIPATH_KARGS)

            assert builder.config is not None
            units = {u["name"]: u for u in json.loads(builder.config.to_string())["systemd"]["units"]}
            assert units["coreos-installer-multipath.service"]["enabled"] is True
            assert units["coreos-installer.service"]["dropins"] == [
                {"name": "wait-for-mpath-target.conf", "contents": constants.MULTIPATH_WAIT_DROPIN}
            ]
        finally:
            await machine.destroy()

    async def test_insecure(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory(insecure=True)).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir, offline=True
        )
        try:
            assert _directive(builder)["insecure"] is True
        finally:
            await machine.destroy()

    async def test_native_4k(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory(native_4k=True)).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir
        )
        try:
            assert (machine.tempdir / ARTIFACTS["metal4k"]).is_symlink()
            assert _directive(builder)["image-url"].endswith(f"/{ARTIFACTS['metal4k']}")
        finally:
            await machine.destroy()

    async def test_debug_outputs(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        """Copies of the configs land in the output directory."""
        live = Conf.empty()
        live.add_file("/etc/motd", "hello\n")
        before = live.to_string()

        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], live, Conf.from_string(TARGET), outdir, offline=True
        )
        try:
            assert json.loads((outdir / "config-target.ign").read_text()) == json.loads(TARGET)
            assert builder.config is not None
            assert (outdir / "config-live.ign").read_text() == builder.config.to_string()
            assert _file_contents(builder.config, "/etc/motd") == "hello\n"
            units = {u["name"] for u in json.loads(builder.config.to_string())["systemd"]["units"]}
            assert {"boot-started.service", "getty@.service", "serial-getty@.service"} <= units
            # Caller's config is left alone
            assert live.to_string() == before
        finally:
            await machine.destroy()

    async def test_boot_started_channel(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        outdir: Path,
    ) -> None:
        machine = await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir, offline=True
        )
        try:
            builder.boot_stream.feed_data(f"{constants.BOOT_STARTED_SIGNAL}\n".encode())
            await machine.boot_started.wait(timeout=5)
            assert builder.instance.boot_order_switches == 1
        finally:
            await machine.destroy()


# ============================================================================
# Failure Paths
# ============================================================================


class TestIsoFailures:
    async def test_tool_failure_cleans_up(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        tools.fail(
            constants.COREOS_INSTALLER_BIN,
            ExternalToolError("running coreos-installer iso kargs: exit status 1", cmd=["coreos-installer"]),
        )
        with pytest.raises(ExternalToolError):
            await Install(build, builder, options_factory()).install_via_iso(
                ["foo=bar"], Conf.empty(), Conf.empty(), outdir
            )
        assert temp_dirs(scratch) == []
        assert builder.execs == 0
        assert builder.closed == 1

    async def test_missing_outdir(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        with pytest.raises(InstallError, match="^writing target config: "):
            await Install(build, builder, options_factory()).install_via_iso(
                [], Conf.empty(), Conf.empty(), outdir / "missing", offline=True
            )
        assert temp_dirs(scratch) == []
        assert builder.execs == 0
        assert builder.closed == 1

    async def test_launch_failure_cleans_up(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        builder.exec_error = OSError("qemu-system-x86_64: not found")
        with pytest.raises(OSError):
            await Install(build, builder, options_factory()).install_via_iso([], Conf.empty(), Conf.empty(), outdir)
        assert temp_dirs(scratch) == []
        assert builder.closed == 1

    async def test_destroy_removes_tempdir(
        self,
        build: LocalBuild,
        builder: FakeBuilder,
        tools: ToolRecorder,
        options_factory: Callable[..., InstallOptions],
        scratch: Path,
        outdir: Path,
    ) -> None:
        async with await Install(build, builder, options_factory()).install_via_iso(
            [], Conf.empty(), Conf.empty(), outdir
        ):
            assert len(temp_dirs(scratch)) == 1
        assert temp_dirs(scratch) == []
        assert builder.instance.destroyed == 1
