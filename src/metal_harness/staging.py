"""Artifact staging helpers shared by the PXE and ISO install flows."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from pathlib import Path

import aiofiles
import aiofiles.os

from metal_harness.exceptions import HarnessError, InstallConfigError, InstallError, PreconditionError

_COPY_CHUNK_SIZE = 1024 * 1024


@contextlib.contextmanager
def install_step(operation: str) -> Iterator[None]:
    """Wrap failures of one install step as InstallError("<operation>: <cause>").

    Precondition and usage errors pass through unchanged so callers can
    still tell them apart.
    """
    try:
        yield
    except (PreconditionError, InstallConfigError):
        raise
    except (HarnessError, OSError) as e:
        raise InstallError(f"{operation}: {e}", {"operation": operation}) from e


async def abs_symlink(src: Path, dest: Path) -> None:
    """Symlink dest -> absolute path of src."""
    await aiofiles.os.symlink(src.absolute(), dest)


async def setup_metal_image(build_dir: Path, metal_image: str, dest_dir: Path) -> str:
    """Link the metal image into dest_dir; returns its name there."""
    with install_step("setting up metal image"):
        await abs_symlink(build_dir / metal_image, dest_dir / metal_image)
    return metal_image


async def concatenate(out_path: Path, *in_paths: Path) -> None:
    """Write the concatenation of in_paths to out_path."""
    async with aiofiles.open(out_path, "wb") as out:
        for in_path in in_paths:
            async with aiofiles.open(in_path, "rb") as f:
                while chunk := await f.read(_COPY_CHUNK_SIZE):
                    await out.write(chunk)
