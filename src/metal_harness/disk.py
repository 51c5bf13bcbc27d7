"""Disk specification parsing.

Format: ``<size>[:<opt1>,<opt2>=<value>,...]``, e.g. ``"5G:channel=nvme,4k"``.
The size is in GiB and must carry a ``G`` suffix.
"""

from dataclasses import dataclass

from metal_harness.exceptions import DiskSpecError

_BOOL_OPTIONS = {"mpath", "4k"}
_VALUE_OPTIONS = {"channel", "serial"}


@dataclass(slots=True)
class Disk:
    """A disk to attach to a machine."""

    size: str = ""  # e.g. "10G"; empty keeps the backing file's size
    backing_file: str = ""
    channel: str = ""  # "virtio" (default), "nvme", "scsi"...
    sector_size: int = 0
    logical_sector_size: int = 0
    multipath: bool = False
    serial: str = ""


def parse_disk_spec(spec: str, allow_no_size: bool = False) -> tuple[int, dict[str, str]]:
    """Split a disk spec into its size (GiB) and option map.

    Raises:
        DiskSpecError: Malformed spec
    """
    options: dict[str, str] = {}
    parts = spec.split(":")
    if len(parts) > 2:
        raise DiskSpecError(f"invalid disk spec {spec}", {"spec": spec})

    size_str = parts[0]
    if size_str == "":
        if not allow_no_size:
            raise DiskSpecError(f"no size provided in '{spec}'", {"spec": spec})
    elif not size_str.endswith("G"):
        raise DiskSpecError(f"invalid size opt {spec}", {"spec": spec})

    if len(parts) == 2:
        for opt in parts[1].split(","):
            if not opt:
                raise DiskSpecError(f"invalid empty option found in spec {spec!r}", {"spec": spec})
            key, _, value = opt.partition("=")
            options[key] = value

    size = 0
    if size_str:
        try:
            size = int(size_str.removesuffix("G"))
        except ValueError as e:
            raise DiskSpecError(f"failed to convert {size_str!r} to int: {e}", {"spec": spec}) from e
    return size, options


def parse_disk(spec: str, allow_no_size: bool = False) -> Disk:
    """Parse a disk spec into a Disk.

    Raises:
        DiskSpecError: Malformed spec or unknown option
    """
    size, options = parse_disk_spec(spec, allow_no_size)
    disk = Disk(size=f"{size}G" if size else "")
    for key, value in options.items():
        if key in _BOOL_OPTIONS and value:
            raise DiskSpecError(f"option {key} takes no value in spec {spec!r}", {"spec": spec})
        if key in _VALUE_OPTIONS and not value:
            raise DiskSpecError(f"option {key} requires a value in spec {spec!r}", {"spec": spec})
        match key:
            case "mpath":
                disk.multipath = True
            case "4k":
                disk.sector_size = 4096
            case "channel":
                disk.channel = value
            case "serial":
                disk.serial = value
            case _:
                raise DiskSpecError(f"unknown disk option {key!r} in spec {spec!r}", {"spec": spec})
    return disk
