"""Boot-started synchronization between host and guest.

The live installer environment writes a marker line to a virtio-serial port
once coreos-installer starts. Until then the VM boots from the network or
ISO; after it, the installed disk must become the first boot device so the
reboot at the end of the install lands on it.

Two watchers race:
- process watcher: QEMU dying (or being killed) before the marker
- signal watcher: the marker line (or EOF / read error / a wrong line)

The first watcher to report decides the outcome; the other is cancelled.

Example:
    ```python
    stream = builder.virtio_channel_read(constants.BOOT_STARTED_CHANNEL)
    instance = await builder.exec()
    result = switch_boot_order_signal(instance, stream)
    await result.wait()  # raises BootSignalError subclasses
    ```
"""

from __future__ import annotations

import asyncio

from metal_harness import constants
from metal_harness._logging import get_logger
from metal_harness.builder import QemuInstance, SignalStream
from metal_harness.exceptions import (
    BootOrderSwitchError,
    BootSignalEofError,
    BootSignalError,
    BootSignalMismatchError,
    BootSignalReadError,
    UnexpectedExitError,
)
from metal_harness.subprocess_utils import log_task_exception

logger = get_logger(__name__)

_UNEXPECTED_EXIT = f"QEMU unexpectedly exited while waiting for {constants.BOOT_STARTED_SIGNAL}"


class BootStartedResult:
    """Single-slot outcome of a boot-started race.

    Resolved exactly once: success (None) or a BootSignalError. Reports after
    the first are dropped. The outcome may be consumed once via wait().
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[BootSignalError | None] = asyncio.get_running_loop().create_future()
        self._watchers: list[asyncio.Task[None]] = []
        self._consumed = False

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._watchers.append(task)
        task.add_done_callback(log_task_exception)

    def report(self, error: BootSignalError | None) -> bool:
        """Offer an outcome. Returns True if it was the one that resolved the result."""
        if self._future.done():
            logger.debug(
                "Dropping late boot signal report",
                extra={"error": str(error) if error else None},
            )
            return False

        self._future.set_result(error)
        if error is None:
            logger.info("Boot started signal received, boot order switched")
        else:
            logger.debug("Boot started race lost", extra={"error": str(error)})

        current = asyncio.current_task()
        for task in self._watchers:
            if task is not current and not task.done():
                task.cancel()
        return True

    def done(self) -> bool:
        """True once resolved; does not consume the outcome."""
        return self._future.done()

    async def wait(self, timeout: float | None = None) -> None:
        """Wait for the outcome.

        Args:
            timeout: Seconds to wait (None waits forever). A timeout, or the
                caller being cancelled, does not consume the outcome.

        Raises:
            BootSignalError: The reported failure
            TimeoutError: Not resolved within timeout
            RuntimeError: Outcome already consumed
        """
        if self._consumed:
            raise RuntimeError("boot started result already consumed")
        self._consumed = True
        try:
            async with asyncio.timeout(timeout):
                error = await asyncio.shield(self._future)
        except BaseException:
            # Nothing was delivered; leave the outcome for the next wait()
            self._consumed = False
            raise
        if error is not None:
            raise error

    async def cancel(self) -> None:
        """Stop both watchers; an unresolved result resolves as an unexpected exit."""
        if not self._future.done():
            self._future.set_result(UnexpectedExitError(f"{_UNEXPECTED_EXIT}: machine destroyed"))
        for task in self._watchers:
            task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)


def _wrap(error: BootSignalError, cause: BaseException) -> BootSignalError:
    error.__cause__ = cause
    return error


async def _watch_process(instance: QemuInstance, result: BootStartedResult) -> None:
    try:
        await instance.wait()
    except Exception as e:
        result.report(_wrap(UnexpectedExitError(f"{_UNEXPECTED_EXIT}: {e}"), e))
        return
    if instance.signaled():
        result.report(UnexpectedExitError(f"{_UNEXPECTED_EXIT}: process killed", {"signaled": True}))
    # A clean exit without a signal leaves the outcome to the signal watcher


async def _watch_signal(instance: QemuInstance, stream: SignalStream, result: BootStartedResult) -> None:
    expected = constants.BOOT_STARTED_SIGNAL
    try:
        line = await stream.readline()
    except Exception as e:
        result.report(_wrap(BootSignalReadError(f"reading from boot started channel: {e}"), e))
        return

    if not line.endswith(b"\n"):
        # QEMU closing the channel usually means it is exiting; give the
        # process watcher a chance to report that first
        await asyncio.sleep(constants.BOOT_SIGNAL_EOF_GRACE_SECONDS)
        result.report(BootSignalEofError(f"Got EOF from boot started channel, {expected} expected"))
        return

    text = line.decode(errors="replace").strip()
    if text != expected:
        result.report(
            BootSignalMismatchError(
                f"Unexpected string from boot started channel: {text!r}, {expected} expected",
                line=text,
            )
        )
        return

    try:
        await instance.switch_boot_order()
    except Exception as e:
        result.report(_wrap(BootOrderSwitchError(f"switching boot order failed: {e}"), e))
        return
    result.report(None)


def switch_boot_order_signal(instance: QemuInstance, stream: SignalStream) -> BootStartedResult:
    """Start the boot-started race for a launched instance.

    Must be called from a running event loop. The stream must have been
    opened (virtio_channel_read) before the instance was launched.
    """
    result = BootStartedResult()
    result._attach(asyncio.create_task(_watch_process(instance, result), name="boot-signal-process"))
    result._attach(asyncio.create_task(_watch_signal(instance, stream, result), name="boot-signal-channel"))
    return result
