"""
FTN addresses and route patterns.

    parse_address("1:153/149.2@fidonet") → FtnAddress(1, 153, 149, 2, "fidonet")

Route patterns are matched from most to least specific:

    Z:N/F.P   Z:N/F.*   Z:N/F   Z:N/*   Z:*/*   *:*/*
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

_ADDR_RE = re.compile(r"^(?:[^@\s]+@)?(\d+):(\d+)/(\d+)(?:\.(\d+))?(?:@([\w.\-]+))?$")


@dataclass(frozen=True)
class FtnAddress:
    zone: int
    net: int
    node: int
    point: int = 0
    domain: str = ""

    def __str__(self) -> str:
        base = f"{self.zone}:{self.net}/{self.node}"
        if self.point:
            base += f".{self.point}"
        return base

    @property
    def with_domain(self) -> str:
        return f"{self}@{self.domain}" if self.domain else str(self)

    def route_keys(self) -> list[str]:
        z, n, f, p = self.zone, self.net, self.node, self.point
        return [
            f"{z}:{n}/{f}.{p}",
            f"{z}:{n}/{f}.*",
            f"{z}:{n}/{f}",
            f"{z}:{n}/*",
            f"{z}:*/*",
            "*:*/*",
        ]


def parse_address(text: str) -> FtnAddress | None:
    """Parse "zone:net/node[.point][@domain]"; returns None when malformed."""
    m = _ADDR_RE.match(text.strip())
    if m is None:
        return None
    zone, net, node, point, domain = m.groups()
    return FtnAddress(int(zone), int(net), int(node), int(point or 0), domain or "")


def normalize_address(text: str) -> str:
    """Strip an @domain suffix and a boss-node ".0" point."""
    addr = text.strip()
    if "@" in addr:
        addr = addr.split("@", 1)[0]
    if addr.endswith(".0"):
        addr = addr[:-2]
    return addr


class RouteTable:
    """Pattern → target lookup with FTN specificity ordering."""

    def __init__(self) -> None:
        self._routes: dict[str, str] = {}

    def add(self, pattern: str, target: str) -> None:
        # first pattern wins, as in a config file read top to bottom
        self._routes.setdefault(pattern.strip(), target)

    def route(self, address: str | FtnAddress) -> str | None:
        addr = parse_address(address) if isinstance(address, str) else address
        if addr is None:
            return None
        for key in addr.route_keys():
            if key in self._routes:
                return self._routes[key]
        return None

    def __len__(self) -> int:
        return len(self._routes)


def address_in_networks(address: str | FtnAddress, networks: Iterable[str]) -> bool:
    table = RouteTable()
    for pattern in networks:
        table.add(pattern, "match")
    return table.route(address) is not None
