"""
Configuration — one BinkpConfig built at start-up and handed to every
component that needs it.

    config = BinkpConfig.load("config/binkp.json")
    client = Client(config)

Relative paths in the file resolve against the directory that holds it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from croniter import croniter

from .address import RouteTable, address_in_networks, normalize_address
from .errors import ConfigError
from .protocol import DEFAULT_PORT

log = logging.getLogger("binkp.config")

DEFAULT_POLL_SCHEDULE = "0 */4 * * *"


@dataclass
class SystemInfo:
    name: str = "Unnamed BBS"
    address: str = ""
    sysop: str = "Sysop"
    location: str = "Unknown"
    hostname: str = "localhost"


@dataclass
class Uplink:
    address: str
    hostname: str = ""
    port: int = DEFAULT_PORT
    password: str = ""
    domain: str = "fidonet"
    networks: list[str] = field(default_factory=list)
    enabled: bool = True
    me: str = ""                    # our address as presented to this uplink
    crypt: bool = False             # prefer CRAM-MD5
    send_domain_in_addr: bool = False
    default: bool = False
    poll_schedule: str = DEFAULT_POLL_SCHEDULE   # cron, local time

    @property
    def adr_line(self) -> str:
        """Address text for M_ADR when talking to this uplink."""
        addr = self.me
        if self.send_domain_in_addr and self.domain and "@" not in addr:
            addr = f"{addr}@{self.domain}"
        return addr


@dataclass
class SecurityConfig:
    allow_insecure_inbound: bool = False
    insecure_allowlist: list[str] = field(default_factory=list)
    max_insecure_sessions_per_hour: int = 10
    allow_plaintext_fallback: bool = True


@dataclass
class CrashmailConfig:
    enabled: bool = True
    max_attempts: int = 3
    retry_interval_minutes: int = 15
    fallback_port: int = DEFAULT_PORT
    allow_insecure: bool = True


@dataclass
class Timing:
    """Session wait bounds, in seconds."""
    got_timeout: float = 120
    got_inactivity: float = 30
    settle_timeout: float = 5
    eob_grace: float = 2
    eob_grace_after_send: float = 5
    eob_timeout: float = 60
    eob_inactivity: float = 30
    crash_confirm_timeout: float = 30
    claim_max_age: float = 3600


@dataclass
class BinkpConfig:
    system: SystemInfo = field(default_factory=SystemInfo)
    port: int = DEFAULT_PORT
    bind_address: str = "0.0.0.0"
    timeout: float = 300
    connect_timeout: float = 30
    max_connections: int = 10
    inbound_path: Path = Path("data/inbound")
    outbound_path: Path = Path("data/outbound")
    database_path: Path = Path("data/binkp.sqlite3")
    timing: Timing = field(default_factory=Timing)
    uplinks: list[Uplink] = field(default_factory=list)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    crashmail: CrashmailConfig = field(default_factory=CrashmailConfig)
    collaborators: dict[str, str] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> BinkpConfig:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
        return cls.from_dict(data, base_dir=path.resolve().parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: str | Path | None = None) -> BinkpConfig:
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be an object")
        base = Path(base_dir) if base_dir is not None else Path.cwd()
        binkp = data.get("binkp", {})

        def _path(key: str, default: Path) -> Path:
            p = Path(binkp.get(key, default))
            return p if p.is_absolute() else base / p

        uplinks = []
        for i, raw in enumerate(data.get("uplinks", [])):
            if not isinstance(raw, dict) or not raw.get("address"):
                raise ConfigError(f"uplinks[{i}]: address is required")
            uplink = _build(Uplink, raw, f"uplinks[{i}]")
            uplink.address = normalize_address(uplink.address)
            if not croniter.is_valid(uplink.poll_schedule):
                raise ConfigError(f"uplinks[{i}]: invalid poll_schedule {uplink.poll_schedule!r}")
            uplinks.append(uplink)

        try:
            return cls(
                system=_build(SystemInfo, data.get("system", {}), "system"),
                port=int(binkp.get("port", DEFAULT_PORT)),
                bind_address=str(binkp.get("bind_address", "0.0.0.0")),
                timeout=float(binkp.get("timeout", 300)),
                connect_timeout=float(binkp.get("connect_timeout", 30)),
                max_connections=int(binkp.get("max_connections", 10)),
                inbound_path=_path("inbound_path", cls.inbound_path),
                outbound_path=_path("outbound_path", cls.outbound_path),
                database_path=_path("database_path", cls.database_path),
                timing=_build(Timing, binkp.get("timing", {}), "binkp.timing"),
                uplinks=uplinks,
                security=_build(SecurityConfig, data.get("security", {}), "security"),
                crashmail=_build(CrashmailConfig, data.get("crashmail", {}), "crashmail"),
                collaborators=dict(data.get("collaborators", {})),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"binkp: {exc}") from exc

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_uplink_by_address(self, address: str) -> Uplink | None:
        addr = normalize_address(address)
        for uplink in self.uplinks:
            if uplink.address == addr:
                return uplink
        return None

    def get_enabled_uplinks(self) -> list[Uplink]:
        return [u for u in self.uplinks if u.enabled]

    def get_default_uplink(self) -> Uplink | None:
        for uplink in self.uplinks:
            if uplink.default and uplink.enabled:
                return uplink
        enabled = self.get_enabled_uplinks()
        return enabled[0] if enabled else None

    def get_password_for_address(self, address: str) -> str:
        uplink = self.get_uplink_by_address(address)
        return uplink.password if uplink else ""

    def get_my_addresses(self) -> list[str]:
        seen: list[str] = []
        for addr in [u.me for u in self.uplinks] + [self.system.address]:
            if addr and addr not in seen:
                seen.append(addr)
        return seen

    def is_my_address(self, address: str) -> bool:
        addr = normalize_address(address)
        return any(normalize_address(a) == addr for a in self.get_my_addresses())

    def get_uplink_for_destination(self, dest: str) -> Uplink | None:
        """Uplink owning the most specific route to *dest* across all uplinks."""
        table = RouteTable()
        for uplink in self.uplinks:
            for pattern in uplink.networks:
                table.add(pattern, uplink.address)
        target = table.route(dest)
        return self.get_uplink_by_address(target) if target else None

    def is_destination_for_uplink(self, dest: str, uplink: Uplink) -> bool:
        return address_in_networks(dest, uplink.networks)

    def has_crypt_uplink(self) -> bool:
        return any(u.crypt for u in self.uplinks)

    def ensure_directories(self) -> None:
        for p in (self.inbound_path, self.outbound_path, self.database_path.parent):
            p.mkdir(parents=True, exist_ok=True)


def _build(cls: type, raw: Any, section: str):
    if not isinstance(raw, dict):
        raise ConfigError(f"{section}: expected an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        log.debug("%s: ignoring keys %s", section, unknown)
    try:
        return cls(**{k: v for k, v in raw.items() if k in known})
    except TypeError as exc:
        raise ConfigError(f"{section}: {exc}") from exc
