"""
Device profiles - which protocol each emulated device speaks and what it says.

Profile content lives in YAML (DEFAULT_PROFILES_YAML, or an operator file
named by the `profiles_file` config key) so the responders only know about
framing, never about a particular console.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

import yaml

_logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Operator configuration problem, reported before any listener starts."""


class ProfileNotFoundError(ConfigError):
    """Device selector does not name a known profile or synonym."""

    def __init__(self, selector: str, known: Iterable[str] = ()) -> None:
        self.selector = selector
        known = sorted(known)
        msg = f"Unknown device type: {selector!r}"
        if known:
            msg += f" (known: {', '.join(known)})"
        super().__init__(msg)


class DeviceFamily(enum.Enum):
    PS4 = "ps4"
    STEAMDECK = "steamdeck"
    SWITCH = "switch"
    XBOX = "xbox"


class ProtocolBinding(enum.Enum):
    TEXT = "text"
    BINARY = "binary"
    MULTICAST = "multicast"


@dataclass(frozen=True)
class DeviceProfile:
    """One emulated device: family, wire protocol and the fields it renders."""

    name: str
    family: DeviceFamily
    binding: ProtocolBinding
    fields: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


DEFAULT_PROFILES_YAML = """\
profiles:
  ps4:
    family: ps4
    binding: text
    fields:
      host_type: PS4
      host_name: FakePS4
      protocol_version: "00020020"
      system_version: "07020001"
      running_app_name: Youtube
      running_app_titleid: CUSA01116
  steamdeck:
    family: steamdeck
    binding: text
    fields:
      host_type: SteamDeck
      host_name: FakeSteamDeck
      protocol_version: "00030030"
      system_version: "01010001"
      running_app_name: Steam
      running_app_titleid: STEAM001
  switch:
    family: switch
    binding: text
    fields:
      host_type: NintendoSwitch
      host_name: NintendoSwitch
      protocol_version: "00020020"
      system_version: 16.0.3
      running_app_name: MarioKart8
      running_app_titleid: "0100152000022000"
  xbox-binary:
    family: xbox
    binding: binary
    fields:
      flags: 1
      device_type: 1
      device_name: FakeXbox
      credential: dummy_cert
  xbox-ssdp:
    family: xbox
    binding: multicast
    fields:
      server: Microsoft-Windows/10.0 UPnP/1.0
      service_type: urn:schemas-upnp-org:device:MediaRenderer:1
      match_targets: [ssdp:all, MediaRenderer]
      max_age: 1800
      location_port: 2869
      location_path: /upnphost/udhisapi.dll

aliases:
  playstation: [ps4]
  deck: [steamdeck]
  steam-deck: [steamdeck]
  ns: [switch]
  nintendo: [switch]
  smartglass: [xbox-binary]
  xbox: [xbox-binary, xbox-ssdp]
  xsx: [xbox-binary, xbox-ssdp]
  xss: [xbox-binary, xbox-ssdp]
"""


def _norm(selector: str) -> str:
    return str(selector).strip().lower().replace("_", "-")


class ProfileCatalog:
    """
    Maps device-type selectors to DeviceProfile objects.

    Read-only after construction; responders running in different tasks
    share one instance.
    """

    def __init__(
        self,
        profiles: Iterable[DeviceProfile],
        aliases: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self._profiles: dict[str, DeviceProfile] = {}
        for p in profiles:
            self._profiles[_norm(p.name)] = p
        self._aliases: dict[str, tuple[str, ...]] = {}
        for alias, targets in (aliases or {}).items():
            if isinstance(targets, str):
                targets = [targets]
            names = tuple(_norm(t) for t in targets)
            missing = [n for n in names if n not in self._profiles]
            if missing or not names:
                raise ConfigError(f"Alias {alias!r} points at unknown profile(s): {missing or '[]'}")
            self._aliases[_norm(alias)] = names

    @classmethod
    def from_yaml(cls, text: str) -> "ProfileCatalog":
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid profile YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("Profile YAML must be a mapping")
        raw_profiles = data.get("profiles") or {}
        if not isinstance(raw_profiles, dict) or not raw_profiles:
            raise ConfigError("Profile YAML defines no profiles")
        profiles = []
        for name, body in raw_profiles.items():
            body = body or {}
            if not isinstance(body, dict):
                raise ConfigError(f"Profile {name!r} must be a mapping")
            try:
                family = DeviceFamily(_norm(body.get("family", "")))
                binding = ProtocolBinding(_norm(body.get("binding", "")))
            except ValueError as e:
                raise ConfigError(f"Profile {name!r}: {e}") from e
            fields = body.get("fields") or {}
            if not isinstance(fields, dict):
                raise ConfigError(f"Profile {name!r}: fields must be a mapping")
            profiles.append(DeviceProfile(str(name), family, binding, fields))
        return cls(profiles, data.get("aliases") or {})

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "ProfileCatalog":
        """Built-in profiles, or those in the YAML file at path."""
        if not path:
            return cls.from_yaml(DEFAULT_PROFILES_YAML)
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Profiles file not found: {path}")
        _logger.info("Loading device profiles from %s", path)
        return cls.from_yaml(path.read_text(encoding="utf-8"))

    def names(self) -> list[str]:
        return list(self._profiles)

    def selectors(self) -> list[str]:
        """Every accepted selector: profile names plus aliases."""
        return sorted(set(self._profiles) | set(self._aliases))

    def _expand(self, selector: str) -> tuple[str, ...]:
        key = _norm(selector)
        if key in self._profiles:
            return (key,)
        if key in self._aliases:
            return self._aliases[key]
        raise ProfileNotFoundError(selector, self.selectors())

    def resolve(self, selector: str) -> DeviceProfile:
        """Profile for selector (case-insensitive, synonyms accepted).

        A selector naming a group (e.g. 'xbox') resolves to the group's
        primary profile; use resolve_all() to get every member.
        """
        return self._profiles[self._expand(selector)[0]]

    def resolve_all(self, selectors: Union[str, Iterable[str]]) -> list[DeviceProfile]:
        """Profiles for a comma-separated selector list, groups expanded, deduplicated."""
        if isinstance(selectors, str):
            selectors = selectors.split(",")
        out: list[DeviceProfile] = []
        seen: set[str] = set()
        for sel in selectors:
            if not str(sel).strip():
                continue
            for name in self._expand(sel):
                if name not in seen:
                    seen.add(name)
                    out.append(self._profiles[name])
        if not out:
            raise ConfigError("No device type selected")
        return out
