"""Network endpoint addresses shared by packets, captures and calls."""

from __future__ import annotations

import re
import socket
from dataclasses import dataclass

import psutil

#: Longest textual IP address accepted (room for IPv6 text form).
ADDRESSLEN = 46

_IPPORT_RE = re.compile(r"([^:]{1,%d}):\s*([+-]?\d+)" % ADDRESSLEN, re.DOTALL)


@dataclass(frozen=True)
class Address:
    """An IP address with a port.

    Two addresses compare equal when both the IP and the port match; use
    :meth:`same_ip` to ignore the port.
    """

    ip: str = ""
    port: int = 0

    def same_ip(self, other: Address) -> bool:
        """Return True when both addresses share the IP, whatever the port."""
        return self.ip == other.ip

    def __bool__(self) -> bool:
        return bool(self.ip) or bool(self.port)

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


def address_from_str(ipport: str | None) -> Address:
    """Parse an ``IP:PORT`` string.

    Anything that cannot be parsed yields an empty :class:`Address`.
    """
    if ipport is None or len(ipport) > ADDRESSLEN + 6:
        return Address()
    match = _IPPORT_RE.match(ipport)
    if match is None:
        return Address()
    return Address(match.group(1), int(match.group(2)) & 0xFFFF)


def _strip_scope(ip: str) -> str:
    return ip.split("%", 1)[0]


def address_is_local(addr: Address) -> bool:
    """Return True if the address's IP belongs to a local network device."""
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            if not entry.address:
                continue
            if _strip_scope(entry.address) == addr.ip:
                return True
    return False