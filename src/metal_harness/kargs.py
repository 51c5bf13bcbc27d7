"""Kernel argument rendering for install runs.

All renderers are pure: the same inputs give the same list, in the same
order, so two runs produce byte-identical command lines.
"""

from collections.abc import Sequence

from metal_harness import constants
from metal_harness.exceptions import UnsupportedArchError


def console_for_arch(arch: str) -> str:
    """Serial console device for an architecture (without `console=`)."""
    try:
        return constants.CONSOLE_KERNEL_ARGUMENT[arch]
    except KeyError:
        raise UnsupportedArchError(f"Unsupported arch {arch}", {"arch": arch}) from None


def render_debug_kargs(debug: bool) -> list[str]:
    """Verbose early-boot logging kargs, or nothing."""
    return list(constants.DEBUG_KARGS) if debug else []


def render_base_kargs(arch: str) -> list[str]:
    return [*constants.BASE_KARGS, f"console={console_for_arch(arch)}"]


def render_install_kargs(base_url: str, metal_name: str, *, offline: bool, insecure: bool) -> list[str]:
    """coreos.inst.* kargs pointing the live installer at the served artifacts."""
    args = [
        f"coreos.inst.install_dev={constants.DEFAULT_DEST_DEVICE}",
        f"coreos.inst.ignition_url={base_url}/config.ign",
    ]
    if not offline:
        args.append(f"coreos.inst.image_url={base_url}/{metal_name}")
    if insecure:
        args.append("coreos.inst.insecure")
    return args


def join_kargs(kargs: Sequence[str]) -> str:
    return " ".join(kargs)
