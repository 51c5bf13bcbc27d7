"""Local clusters of QEMU machines.

A Flight holds the options shared by a test run and a factory for fresh
builders; each Cluster created from it provisions machines:

    flight = Flight(ClusterOptions(output_dir=outdir), builder_factory)
    cluster = flight.new_cluster()
    machine = await cluster.new_machine(userdata)
    ...
    await cluster.destroy()

new_machine_with_options() flow:
1. Reject instance types, create <output_dir>/<machine id>
2. Render userdata (under the cluster lock)
3. Configure a fresh builder from flight and machine options, launch it
4. Poll for the SSH address (6 attempts, 5s apart)
5. Run the bring-up handshake unless skipped
6. Register and supervise the QEMU process
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path

import aiofiles.os
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from metal_harness import constants
from metal_harness._logging import get_logger
from metal_harness.builder import QemuBuilder, QemuInstance
from metal_harness.config import ClusterOptions, MachineOptions
from metal_harness.disk import Disk, parse_disk
from metal_harness.exceptions import (
    DiskSpecError,
    MachineStartError,
    MachineUnreachableError,
    VmConfigError,
)
from metal_harness.ignition import Conf
from metal_harness.models import HostForwardPort
from metal_harness.subprocess_utils import log_task_exception

logger = get_logger(__name__)

StartMachine = Callable[["Machine"], Awaitable[None]]

DEFAULT_HOST_FORWARD_PORTS: tuple[HostForwardPort, ...] = (
    HostForwardPort(service="ssh", host_port=0, guest_port=constants.SSH_GUEST_PORT),
)


class Machine:
    """A QEMU machine belonging to a cluster."""

    def __init__(self, cluster: Cluster, machine_id: str, machine_dir: Path):
        self.cluster = cluster
        self.id = machine_id
        self.dir = machine_dir
        self.console_path = machine_dir / "console.txt"
        self.instance: QemuInstance | None = None
        self.ssh_address = ""
        self._destroyed = False

    async def destroy(self) -> None:
        """Kill the VM and unregister it. Idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        try:
            if self.instance is not None:
                await self.instance.destroy()
        finally:
            self.cluster.del_machine(self)
        logger.debug("Machine destroyed", extra={"machine_id": self.id})


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host, int(port)


async def wait_for_ssh_banner(machine: Machine) -> None:
    """Default bring-up handshake: wait until sshd greets on the forwarded port.

    Raises:
        TimeoutError: No banner within START_MACHINE_TIMEOUT_SECONDS
    """
    host, port = _split_address(machine.ssh_address)

    async def read_banner() -> None:
        reader, writer = await asyncio.open_connection(host, port)
        try:
            banner = await reader.readline()
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
        if not banner.startswith(constants.SSH_BANNER_PREFIX):
            raise ConnectionError(f"unexpected banner {banner[:64]!r}")

    async with asyncio.timeout(constants.START_MACHINE_TIMEOUT_SECONDS):
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(OSError),
            wait=wait_fixed(1),
            reraise=True,
        ):
            with attempt:
                await read_banner()
    logger.debug("SSH banner received", extra={"machine_id": machine.id, "address": machine.ssh_address})


async def poll_ssh_address(instance: QemuInstance) -> str:
    """Wait for the instance's forwarded SSH address.

    Raises:
        MachineUnreachableError: Address not available after all attempts
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.SSH_ADDRESS_MAX_ATTEMPTS),
            wait=wait_fixed(constants.SSH_ADDRESS_RETRY_SECONDS),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        ):
            with attempt:
                return await instance.ssh_address()
    except Exception as e:
        raise MachineUnreachableError(
            f"machine SSH address unavailable after {constants.SSH_ADDRESS_MAX_ATTEMPTS} attempts: {e}",
            {"attempts": constants.SSH_ADDRESS_MAX_ATTEMPTS},
        ) from e
    # Unreachable: AsyncRetrying either returns or raises
    raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")


class Cluster:
    """A set of machines sharing flight options and a render lock."""

    def __init__(self, flight: Flight):
        self.flight = flight
        self.machines: dict[str, Machine] = {}
        self.tearing_down = False
        self._lock = asyncio.Lock()
        self._serial = 0
        self._supervisors: set[asyncio.Task[None]] = set()

    @property
    def options(self) -> ClusterOptions:
        return self.flight.options

    def allocate_machine_serial(self) -> int:
        self._serial += 1
        return self._serial

    def add_machine(self, machine: Machine) -> None:
        self.machines[machine.id] = machine

    def del_machine(self, machine: Machine) -> None:
        self.machines.pop(machine.id, None)

    async def render_userdata(self, userdata: Conf | None, substitutions: dict[str, str]) -> Conf:
        # Rendering touches shared cluster state, so one machine at a time
        async with self._lock:
            if userdata is None:
                return Conf.none()
            return userdata.render(substitutions)

    async def new_machine(self, userdata: Conf | None) -> Machine:
        return await self.new_machine_with_options(userdata, MachineOptions())

    async def new_machine_with_options(self, userdata: Conf | None, options: MachineOptions) -> Machine:
        """Provision, launch and (unless skipped) bring up a machine.

        Raises:
            VmConfigError: Unsupported option or unusable config
            DiskSpecError: Invalid primary disk spec
            MachineUnreachableError: SSH address never appeared
            MachineStartError: Bring-up handshake failed
        """
        if options.instance_type:
            raise VmConfigError(
                "platform qemu does not support changing instance types",
                {"instance_type": options.instance_type},
            )

        machine_id = str(uuid.uuid4())
        machine_dir = self.options.output_dir / machine_id
        await aiofiles.os.mkdir(machine_dir)

        conf = await self.render_userdata(userdata, {"machine_id": machine_id})
        machine = Machine(self, machine_id, machine_dir)

        builder = self.flight.builder_factory()
        try:
            await self._configure_builder(builder, machine, conf, options)
            machine.instance = await builder.exec()
        finally:
            await asyncio.shield(builder.close())

        try:
            machine.ssh_address = await poll_ssh_address(machine.instance)
        except MachineUnreachableError:
            await machine.destroy()
            raise

        if not options.skip_start_machine:
            try:
                await self.flight.start_machine(machine)
            except Exception as e:
                await machine.destroy()
                raise MachineStartError(
                    f"starting machine {machine_id}: {e}", {"machine_id": machine_id}
                ) from e

        self.add_machine(machine)
        task = asyncio.create_task(self._supervise(machine), name=f"supervise-{machine_id}")
        self._supervisors.add(task)
        task.add_done_callback(self._supervisors.discard)
        task.add_done_callback(log_task_exception)

        logger.info("Machine started", extra={"machine_id": machine_id, "ssh_address": machine.ssh_address})
        return machine

    async def _configure_builder(
        self, builder: QemuBuilder, machine: Machine, conf: Conf, options: MachineOptions
    ) -> None:
        flight = self.options

        if options.disable_pdeathsig:
            builder.pdeathsig = False

        if flight.secure_execution:
            builder.set_secure_execution(
                flight.secure_execution_ignition_pubkey, flight.secure_execution_hostkey, conf
            )

        config_path = ""
        if conf.is_ignition():
            config_path = str(machine.dir / "ignition.json")
            await conf.write_file(config_path)
        elif not conf.is_empty():
            raise VmConfigError("qemu only supports Ignition or empty configs")
        builder.config_file = config_path

        builder.uuid = machine.id
        if flight.arch:
            builder.set_architecture(flight.arch)
        if flight.firmware:
            builder.firmware = flight.firmware
        builder.swtpm = flight.swtpm
        builder.hostname = f"qemu{self.allocate_machine_serial()}"
        builder.console_file = str(machine.console_path)

        for path in flight.bind_ro:
            builder.mount_host(path, "/kola/host/" + path.lstrip("/"), True)

        if flight.memory:
            try:
                builder.memory_mib = int(flight.memory)
            except ValueError as e:
                raise VmConfigError(f"parsing memory option: {e}", {"memory": flight.memory}) from e
        elif options.min_memory:
            builder.memory_mib = options.min_memory
        elif flight.secure_execution:
            builder.memory_mib = constants.SECURE_EXECUTION_MEMORY_MIB

        builder.add_boot_disk(self._primary_disk(options))
        if flight.cex or options.cex:
            builder.add_cex_device()
        builder.add_disks_from_specs(list(options.additional_disks))

        builder.enable_usermode_networking(list(options.host_forward_ports or DEFAULT_HOST_FORWARD_PORTS), "")
        if options.additional_nics:
            builder.add_additional_nics(options.additional_nics)
        if options.append_kernel_args:
            builder.append_kernel_args = options.append_kernel_args
        if options.append_firstboot_kernel_args:
            builder.append_firstboot_kernel_args = options.append_firstboot_kernel_args
        if not flight.internet_access:
            builder.restrict_networking = True
        if options.firmware:
            builder.firmware = options.firmware

    def _primary_disk(self, options: MachineOptions) -> Disk:
        """Boot disk, layered: machine options > flight options > defaults."""
        flight = self.options
        disk = Disk()
        if options.primary_disk:
            try:
                disk = parse_disk(options.primary_disk, allow_no_size=True)
            except DiskSpecError as e:
                raise DiskSpecError(
                    f"parsing primary disk spec '{options.primary_disk}': {e}",
                    {"spec": options.primary_disk},
                ) from e

        if flight.nvme or options.nvme:
            disk.channel = "nvme"
        if flight.native_4k:
            disk.sector_size = 4096
        elif flight.disk_512e:
            disk.sector_size = 4096
            disk.logical_sector_size = 512
        if options.multipath_disk or flight.multipath_disk:
            disk.multipath = True
        if options.min_disk_size > 0:
            disk.size = f"{options.min_disk_size}G"
        elif flight.disk_size:
            disk.size = flight.disk_size
        disk.backing_file = options.override_backing_file or flight.disk_image
        return disk

    async def _supervise(self, machine: Machine) -> None:
        # Nothing else waits on the process in this flow
        assert machine.instance is not None
        try:
            await machine.instance.wait()
        except Exception as e:
            if not self.tearing_down:
                logger.error(
                    "QEMU process finished abnormally",
                    extra={"machine_id": machine.id, "error": str(e), "error_type": type(e).__name__},
                )

    async def destroy(self) -> None:
        """Destroy every machine, then leave the flight."""
        # Must precede the kills so supervisors see an intentional shutdown
        self.tearing_down = True
        try:
            for machine in list(self.machines.values()):
                try:
                    await machine.destroy()
                except Exception as e:
                    logger.warning(
                        "Machine destroy failed",
                        extra={"machine_id": machine.id, "error": str(e), "error_type": type(e).__name__},
                    )
        finally:
            for task in list(self._supervisors):
                task.cancel()
            await asyncio.gather(*self._supervisors, return_exceptions=True)
            self.flight.del_cluster(self)


class Flight:
    """Options and builder factory shared by all clusters of a test run."""

    def __init__(
        self,
        options: ClusterOptions,
        builder_factory: Callable[[], QemuBuilder],
        start_machine: StartMachine = wait_for_ssh_banner,
    ):
        self.options = options
        self.builder_factory = builder_factory
        self.start_machine = start_machine
        self.clusters: list[Cluster] = []

    def new_cluster(self) -> Cluster:
        cluster = Cluster(self)
        self.clusters.append(cluster)
        return cluster

    def del_cluster(self, cluster: Cluster) -> None:
        with contextlib.suppress(ValueError):
            self.clusters.remove(cluster)

    async def destroy(self) -> None:
        for cluster in list(self.clusters):
            await cluster.destroy()
