"""Unit tests for disk spec parsing."""

import pytest

from metal_harness.disk import Disk, parse_disk, parse_disk_spec
from metal_harness.exceptions import DiskSpecError, PreconditionError


class TestParseDiskSpec:
    """Size and option splitting."""

    def test_size_only(self) -> None:
        assert parse_disk_spec("5G") == (5, {})

    def test_options(self) -> None:
        assert parse_disk_spec("5G:channel=nvme,4k") == (5, {"channel": "nvme", "4k": ""})

    def test_no_size_allowed(self) -> None:
        assert parse_disk_spec(":mpath", allow_no_size=True) == (0, {"mpath": ""})

    @pytest.mark.parametrize(
        ("spec", "match"),
        [
            ("", "no size provided"),
            (":mpath", "no size provided"),
            ("5", "invalid size opt"),
            ("5M", "invalid size opt"),
            ("5G:a:b", "invalid disk spec"),
            ("5G:mpath,", "invalid empty option"),
            ("5G:", "invalid empty option"),
            ("xG", "failed to convert"),
        ],
    )
    def test_malformed(self, spec: str, match: str) -> None:
        with pytest.raises(DiskSpecError, match=match):
            parse_disk_spec(spec)


class TestParseDisk:
    def test_full(self) -> None:
        disk = parse_disk("10G:mpath,4k,channel=scsi,serial=data0")
        assert disk == Disk(size="10G", channel="scsi", sector_size=4096, multipath=True, serial="data0")

    def test_no_size(self) -> None:
        """No size keeps the backing file's size."""
        assert parse_disk(":channel=nvme", allow_no_size=True) == Disk(channel="nvme")

    @pytest.mark.parametrize(
        ("spec", "match"),
        [
            ("5G:mpath=yes", "takes no value"),
            ("5G:channel", "requires a value"),
            ("5G:serial=", "requires a value"),
            ("5G:turbo", "unknown disk option"),
        ],
    )
    def test_bad_options(self, spec: str, match: str) -> None:
        with pytest.raises(DiskSpecError, match=match):
            parse_disk(spec)

    def test_is_precondition_error(self) -> None:
        """Nothing has been created when a spec is rejected."""
        with pytest.raises(PreconditionError):
            parse_disk("bogus")
