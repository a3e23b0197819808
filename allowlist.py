# allowlist.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from addresses import is_ip_literal, is_valid_hostname, parse_ports
from errors import PortParseError
from hostmap import AliasTable

logger = logging.getLogger(__name__)

PortMap = Dict[int, Set[str]]

_CIDR_PREFIX_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}/\d{1,2})(?::(.*))?$")


@dataclass(frozen=True)
class AllowListEntry:
    host: str
    ports: Optional[str] = None


@dataclass
class ResolvedAllow:
    """Port-keyed egress destinations derived from one allowlist annotation."""

    ip: PortMap = field(default_factory=dict)
    fqdn: PortMap = field(default_factory=dict)
    # host tokens that failed hostname validation and were left out
    dropped: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.ip and not self.fqdn

    def add_ip(self, port: int, value: str) -> None:
        self.ip.setdefault(port, set()).add(value)

    def add_fqdn(self, port: int, value: str) -> None:
        self.fqdn.setdefault(port, set()).add(value)

    def to_dict(self) -> dict:
        """Sorted, JSON-serializable form (used for statistics)."""
        return {
            "ip": {str(p): sorted(self.ip[p]) for p in sorted(self.ip)},
            "fqdn": {str(p): sorted(self.fqdn[p]) for p in sorted(self.fqdn)},
        }


def parse_entry(token: str) -> AllowListEntry:
    """Split one allowlist token into host and optional port spec.

    ``https://host.example:8443/path`` -> ("host.example", "8443")
    ``10.0.0.0/24:22``                 -> ("10.0.0.0/24", "22")
    """
    t = token.strip()
    if "//" in t:
        t = t.split("//", 1)[1]

    m = _CIDR_PREFIX_RE.match(t)
    if m:
        host, ports = m.group(1), m.group(2)
    else:
        t = t.split("/", 1)[0]
        if ":" not in t:
            return AllowListEntry(host=t)
        host, ports = t.rsplit(":", 1)

    if ports is not None and not ports.strip():
        raise PortParseError(f"empty port in {token.strip()!r}")
    return AllowListEntry(host=host, ports=ports)


def split_allowlist(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    compact = re.sub(r"\s+", "", raw)
    return [t for t in compact.split(",") if t]


def resolve(raw: Optional[str], aliases: Optional[AliasTable] = None) -> ResolvedAllow:
    """Resolve an allowlist annotation into IP and FQDN port maps.

    - IPv4 literals / CIDRs go to the IP map as written.
    - Known aliases go to the IP map with their expanded IP set; the port
      comes from the request, never from the alias record.
    - Everything else must look like a multi-label hostname; it is lowercased
      and goes to the FQDN map, otherwise it is dropped.

    A malformed port anywhere raises PortParseError and nothing is returned.
    """
    aliases = aliases if aliases is not None else AliasTable()
    out = ResolvedAllow()

    for token in split_allowlist(raw):
        entry = parse_entry(token)
        ports = parse_ports(entry.ports)
        host = entry.host.lower()

        if is_ip_literal(host):
            for port in ports:
                out.add_ip(port, host)
            continue

        if host in aliases:
            ips, scan_names = aliases.expand(host)
            for port in ports:
                for ip in ips:
                    out.add_ip(port, ip)
                for name in scan_names:
                    out.add_fqdn(port, name)
            continue

        if is_valid_hostname(host):
            for port in ports:
                out.add_fqdn(port, host)
        else:
            logger.debug("[allowlist] dropping invalid host %r", entry.host)
            out.dropped.append(entry.host)

    return out
