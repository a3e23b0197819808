"""Static table of known hosts that the FQDN controller cannot resolve.

On-prem databases and similar hosts sit behind names that are only
resolvable inside the corporate network, so egress to them has to be
expressed as IP rules. The table is loaded once at startup and shared
read-only by every admission request.

File format (YAML)::

    db-scan.example.org:
      ips: ["2.3.4.5"]
      port: "1521"
      scan:
        - host: db1-vip.example.org
          ip: "14.15.16.17"
        - db5.example.org

The legacy layout ``{"oracle": [{"host": ..., "ips": ..., "scan": ...}]}``
is accepted as well.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, Mapping, Optional, Tuple

import yaml

from addresses import is_ip_literal, is_valid_hostname, parse_ports
from errors import ParseFailure, PortParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanHost:
    host: str
    ip: Optional[str] = None


@dataclass(frozen=True)
class HostAlias:
    name: str
    ips: FrozenSet[str] = frozenset()
    port: Tuple[int, ...] = (443,)
    scan: Tuple[ScanHost, ...] = field(default_factory=tuple)


class AliasTable:
    """Immutable hostname -> HostAlias lookup."""

    def __init__(self, aliases: Optional[Mapping[str, HostAlias]] = None):
        self._aliases = MappingProxyType(dict(aliases or {}))

    def __len__(self) -> int:
        return len(self._aliases)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._aliases))

    def __contains__(self, host: object) -> bool:
        return isinstance(host, str) and host.lower() in self._aliases

    def lookup(self, host: str) -> Optional[HostAlias]:
        return self._aliases.get((host or "").lower())

    def expand(self, host: str) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Return (ips, unresolved scan hostnames) for an alias.

        Scan hosts are followed exactly one level: a scan host that is itself
        an alias contributes its own IPs, but its scan list is not walked.
        """
        alias = self.lookup(host)
        if alias is None:
            return frozenset(), frozenset()

        ips = set(alias.ips)
        names = set()
        for scan in alias.scan:
            if scan.ip:
                ips.add(scan.ip)
                continue
            nested = self.lookup(scan.host)
            if nested is not None:
                ips.update(nested.ips)
            else:
                names.add(scan.host)
        return frozenset(ips), frozenset(names)


def _parse_scan(host: str, raw) -> Tuple[ScanHost, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ParseFailure(f"alias {host}: scan must be a list")

    out = []
    for item in raw:
        if isinstance(item, str):
            name, ip = item, None
        elif isinstance(item, dict):
            name, ip = item.get("host"), item.get("ip")
        else:
            raise ParseFailure(f"alias {host}: malformed scan entry {item!r}")
        name = str(name or "").strip().lower()
        if not is_valid_hostname(name):
            raise ParseFailure(f"alias {host}: invalid scan host {name!r}")
        if ip is not None:
            ip = str(ip).strip()
            if not is_ip_literal(ip):
                raise ParseFailure(f"alias {host}: invalid scan ip {ip!r}")
        out.append(ScanHost(host=name, ip=ip))
    return tuple(out)


def _parse_alias(host, record) -> HostAlias:
    name = str(host or "").strip().lower()
    if not name:
        raise ParseFailure("alias with empty host name")
    if not isinstance(record, dict):
        raise ParseFailure(f"alias {name}: expected a mapping, got {type(record).__name__}")

    raw_ips = record.get("ips") or []
    if isinstance(raw_ips, str):
        raw_ips = [raw_ips]
    if not isinstance(raw_ips, list):
        raise ParseFailure(f"alias {name}: ips must be a list")
    ips = set()
    for ip in raw_ips:
        ip = str(ip).strip()
        if not is_ip_literal(ip):
            raise ParseFailure(f"alias {name}: invalid ip {ip!r}")
        ips.add(ip)

    try:
        port = tuple(parse_ports(record.get("port")))
    except PortParseError as e:
        raise ParseFailure(f"alias {name}: {e}") from e

    return HostAlias(name=name, ips=frozenset(ips), port=port, scan=_parse_scan(name, record.get("scan")))


def parse_aliases(doc) -> AliasTable:
    """Build an AliasTable from an already-decoded YAML document."""
    if doc is None:
        return AliasTable()
    if not isinstance(doc, dict):
        raise ParseFailure("alias file must contain a mapping at the top level")

    aliases: Dict[str, HostAlias] = {}
    if isinstance(doc.get("oracle"), list):
        for record in doc["oracle"]:
            if not isinstance(record, dict):
                raise ParseFailure(f"malformed oracle entry {record!r}")
            alias = _parse_alias(record.get("host"), record)
            aliases[alias.name] = alias
    else:
        for host, record in doc.items():
            alias = _parse_alias(host, record)
            aliases[alias.name] = alias
    return AliasTable(aliases)


def load(path) -> AliasTable:
    """Load the alias file; any problem is fatal for the caller at startup."""
    if not path:
        logger.info("[hostmap] no alias file configured, using empty table")
        return AliasTable()

    p = Path(path)
    try:
        text = p.read_text()
    except OSError as e:
        raise ParseFailure(f"failed to read alias file {p}: {e}") from e

    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseFailure(f"failed to parse alias file {p}: {e}") from e

    table = parse_aliases(doc)
    logger.info("[hostmap] loaded %d host aliases from %s", len(table), p)
    return table
