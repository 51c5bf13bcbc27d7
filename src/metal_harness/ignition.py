"""Minimal Ignition (spec v3) config object.

Only the operations the install and provisioning flows need: file and
systemd unit injection, drop-ins, serial autologin, config merging,
placeholder rendering and serialization. This is not a Butane translator.
"""

from __future__ import annotations

import copy
import json
import string
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import quote

import aiofiles

IGNITION_VERSION = "3.4.0"

_AUTOLOGIN_DROPIN = """[Service]
ExecStart=
ExecStart=-/usr/sbin/agetty --autologin core --noclear %I $TERM
"""

# Units carrying a login prompt in the live environment
_GETTY_UNITS = ("getty@.service", "serial-getty@.service")


class UnitState(str, Enum):
    """Enablement applied to an injected systemd unit."""

    NONE = "none"
    ENABLE = "enable"
    MASK = "mask"


def data_url(contents: str) -> str:
    """Encode file contents as an RFC 2397 data URL (Ignition inline source)."""
    return "data:," + quote(contents, safe="")


class Conf:
    """An Ignition config, or an empty (absent) config.

    Example:
        >>> conf = Conf.empty()
        >>> conf.add_file("/etc/motd", "hello\\n")
        >>> conf.add_config_source("http://10.0.2.2:8000/target.ign")
        >>> text = conf.to_string()
    """

    def __init__(self, data: dict[str, Any] | None = None):
        self._data = data

    @classmethod
    def empty(cls) -> Conf:
        """A valid Ignition config with no content."""
        return cls({"ignition": {"version": IGNITION_VERSION}})

    @classmethod
    def none(cls) -> Conf:
        """No config at all (machine boots without Ignition userdata)."""
        return cls(None)

    @classmethod
    def from_string(cls, text: str) -> Conf:
        """Parse a serialized Ignition config; blank text means no config."""
        if not text.strip():
            return cls(None)
        return cls(json.loads(text))

    def is_empty(self) -> bool:
        return self._data is None

    def is_ignition(self) -> bool:
        return self._data is not None and "ignition" in self._data

    def copy(self) -> Conf:
        return Conf(copy.deepcopy(self._data))

    def _doc(self) -> dict[str, Any]:
        if self._data is None:
            self._data = {"ignition": {"version": IGNITION_VERSION}}
        return self._data

    def _units(self) -> list[dict[str, Any]]:
        return self._doc().setdefault("systemd", {}).setdefault("units", [])

    def _unit(self, name: str) -> dict[str, Any]:
        units = self._units()
        for unit in units:
            if unit.get("name") == name:
                return unit
        unit = {"name": name}
        units.append(unit)
        return unit

    def add_file(self, path: str, contents: str, mode: int = 0o644) -> None:
        """Add (or overwrite) a file with inline contents."""
        files = self._doc().setdefault("storage", {}).setdefault("files", [])
        # Ignition rejects two entries for one path
        files[:] = [f for f in files if f.get("path") != path]
        files.append(
            {
                "path": path,
                "contents": {"source": data_url(contents)},
                "mode": mode,
                "overwrite": True,
            }
        )

    def add_systemd_unit(self, name: str, contents: str, state: UnitState = UnitState.NONE) -> None:
        """Add a systemd unit, optionally enabling or masking it."""
        unit = self._unit(name)
        unit["contents"] = contents
        if state == UnitState.ENABLE:
            unit["enabled"] = True
        elif state == UnitState.MASK:
            unit["mask"] = True

    def add_systemd_unit_dropin(self, unit_name: str, dropin_name: str, contents: str) -> None:
        """Add a drop-in for a (possibly pre-existing) unit."""
        unit = self._unit(unit_name)
        unit.setdefault("dropins", []).append({"name": dropin_name, "contents": contents})

    def add_autologin(self) -> None:
        """Log the core user in automatically on the consoles (debugging aid)."""
        for unit in _GETTY_UNITS:
            self.add_systemd_unit_dropin(unit, "10-autologin.conf", _AUTOLOGIN_DROPIN)

    def add_config_source(self, source: str) -> None:
        """Merge a remote config into this one at boot (pointer config)."""
        ignition = self._doc().setdefault("ignition", {"version": IGNITION_VERSION})
        ignition.setdefault("config", {}).setdefault("merge", []).append({"source": source})

    def render(self, substitutions: Mapping[str, str]) -> Conf:
        """Return a copy with `$name` placeholders replaced.

        Unknown placeholders are left untouched. Escaping is not supported.
        """
        if self._data is None:
            return Conf(None)
        text = string.Template(json.dumps(self._data)).safe_substitute(substitutions)
        return Conf(json.loads(text))

    def to_string(self) -> str:
        """Serialize; an empty config serializes to the empty string."""
        if self._data is None:
            return ""
        return json.dumps(self._data, separators=(",", ":"))

    async def write_file(self, path: str | Path) -> None:
        async with aiofiles.open(path, "w") as f:
            await f.write(self.to_string())

    def __str__(self) -> str:
        return self.to_string()
