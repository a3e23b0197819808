# addresses.py
from __future__ import annotations

import ipaddress
import re
from typing import List

from errors import PortParseError

DEFAULT_PORT = 443

_IPV4_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}(?:/\d{1,2})?$")
# RFC1123 labels, at least two of them
_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)+$"
)


def is_ip_literal(host: str) -> bool:
    """True for an IPv4 address or IPv4 CIDR (``10.0.0.5``, ``10.0.0.0/24``)."""
    if not _IPV4_RE.match(host or ""):
        return False
    try:
        ipaddress.IPv4Network(host, strict=False)
    except ValueError:
        return False
    return True


def to_cidr(host: str) -> str:
    """Bare IPs widen to /32, CIDRs normalize to their network address."""
    return str(ipaddress.IPv4Network(host, strict=False))


def is_valid_hostname(host: str) -> bool:
    h = (host or "").lower()
    if not _HOSTNAME_RE.match(h):
        return False
    # all-numeric final label means a broken IP, not a name
    return not h.rsplit(".", 1)[-1].isdigit()


def _port(value: str, spec: str) -> int:
    v = value.strip()
    if not v.isdigit():
        raise PortParseError(f"invalid port {value!r} in {spec!r}")
    port = int(v)
    if not 1 <= port <= 65535:
        raise PortParseError(f"port {port} out of range in {spec!r}")
    return port


def parse_ports(spec) -> List[int]:
    """Parse a port spec into a sorted list of unique ports.

    Accepted forms:
      - absent / empty      -> [443]
      - single  "22"        -> [22]
      - list    "80;443" / "80,443"
      - range   "6005-6010" (inclusive)

    Anything non-numeric raises PortParseError; the caller must not build
    partial policies from it.
    """
    if spec is None:
        return [DEFAULT_PORT]
    s = str(spec).strip()
    if not s:
        return [DEFAULT_PORT]

    ports = set()
    for part in re.split(r"[;,]", s):
        part = part.strip()
        if not part:
            raise PortParseError(f"empty port in {s!r}")
        if "-" in part:
            lo_s, _, hi_s = part.partition("-")
            lo, hi = _port(lo_s, s), _port(hi_s, s)
            if lo > hi:
                raise PortParseError(f"descending port range {part!r}")
            ports.update(range(lo, hi + 1))
        else:
            ports.add(_port(part, s))
    return sorted(ports)
