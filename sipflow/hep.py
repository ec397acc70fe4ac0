"""Encoding and decoding of HEP/EEP (Extensible Encapsulation Protocol) packets."""

from __future__ import annotations

import ipaddress
import re
import struct
from enum import IntEnum

from sipflow.address import ADDRESSLEN, Address
from sipflow.packet import Frame, Packet, PacketType

#: Address family numbers carried in HEP headers.
HEP_FAMILY_INET = 2
HEP_FAMILY_INET6 = 10

#: Magic bytes opening every HEPv3 packet.
HEP3_ID = b"HEP3"

_ETHERTYPE_IP = 0x0800
_IPPROTO_UDP = 17
_IP_TTL = 128
_ETH_DST = b"\xbb" * 6
_ETH_SRC = b"\xaa" * 6

_V2_HDR = struct.Struct("!BBBBHH")
_V2_TIME = struct.Struct("<IIH2x")
_CHUNK = struct.Struct("!HHH")
_CTRL_LEN = 6

_URL_RE = re.compile(r"[^:]+:([^:]{1,%d}):\s*(\S{1,5})" % ADDRESSLEN, re.DOTALL)


class HepError(ValueError):
    """A HEP packet could not be built or decoded."""


class ChunkType(IntEnum):
    """Generic (vendor 0) HEPv3 chunk types."""

    INVALID = 0
    FAMILY = 1
    PROTO = 2
    SRC_IP4 = 3
    DST_IP4 = 4
    SRC_IP6 = 5
    DST_IP6 = 6
    SRC_PORT = 7
    DST_PORT = 8
    TS_SEC = 9
    TS_USEC = 10
    PROTO_TYPE = 11
    CAPT_ID = 12
    KEEP_TM = 13
    AUTH_KEY = 14
    PAYLOAD = 15
    CORRELATION_ID = 16


def _packed_ip(ip: str, version: int) -> bytes:
    """Binary form of an address; zeros when it is not of the given version."""
    size = 4 if version == 4 else 16
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return bytes(size)
    if parsed.version != version:
        return bytes(size)
    return parsed.packed


def _family(ip_version: int) -> int:
    return HEP_FAMILY_INET if ip_version == 4 else HEP_FAMILY_INET6


def build_frame(ts: tuple[int, int], payload: bytes, src: Address, dst: Address) -> Frame:
    """Wrap a payload into a synthetic Ethernet/IPv4/UDP frame."""
    payload = bytes(payload)
    seconds, microseconds = ts
    ether = _ETH_DST + _ETH_SRC + struct.pack("!H", _ETHERTYPE_IP)
    ip_header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        (20 + 8 + len(payload)) & 0xFFFF,
        0,
        0,
        _IP_TTL,
        _IPPROTO_UDP,
        0,
        _packed_ip(src.ip, 4),
        _packed_ip(dst.ip, 4),
    )
    udp_header = struct.pack(
        "!HHHH", src.port & 0xFFFF, dst.port & 0xFFFF, (8 + len(payload)) & 0xFFFF, 0
    )
    return Frame(seconds, microseconds, ether + ip_header + udp_header + payload)


def encode_v2(packet: Packet, capture_id: int = 0) -> bytes:
    """Encapsulate a packet's payload in a HEPv2 message."""
    seconds, microseconds = packet.timestamp
    if packet.ip_version == 4:
        ip_header = _packed_ip(packet.src.ip, 4) + _packed_ip(packet.dst.ip, 4)
    elif packet.ip_version == 6:
        ip_header = _packed_ip(packet.src.ip, 6) + _packed_ip(packet.dst.ip, 6)
    else:
        ip_header = b""
    header_len = _V2_HDR.size + len(ip_header) + _V2_TIME.size
    header = _V2_HDR.pack(
        2,
        header_len,
        _family(packet.ip_version),
        packet.proto & 0xFF,
        packet.src.port & 0xFFFF,
        packet.dst.port & 0xFFFF,
    )
    time_header = _V2_TIME.pack(
        seconds & 0xFFFFFFFF, microseconds & 0xFFFFFFFF, capture_id & 0xFFFF
    )
    return header + ip_header + time_header + bytes(packet.payload)


def decode_v2(data: bytes) -> Packet:
    """Build a packet from a HEPv2 message.

    Raises HepError when the message is not HEPv2 or is truncated.
    """
    data = bytes(data)
    if len(data) < _V2_HDR.size:
        raise HepError("HEPv2 message too short")
    version, _, family, proto, sport, dport = _V2_HDR.unpack_from(data)
    if version != 2:
        raise HepError(f"not a HEPv2 message (version {version})")
    pos = _V2_HDR.size
    src_ip = dst_ip = ""
    if family in (HEP_FAMILY_INET, HEP_FAMILY_INET6):
        size = 4 if family == HEP_FAMILY_INET else 16
        if len(data) < pos + 2 * size:
            raise HepError("HEPv2 address header truncated")
        src_ip = str(ipaddress.ip_address(data[pos:pos + size]))
        dst_ip = str(ipaddress.ip_address(data[pos + size:pos + 2 * size]))
        pos += 2 * size
    if len(data) < pos + _V2_TIME.size:
        raise HepError("HEPv2 time header truncated")
    seconds, microseconds, _ = _V2_TIME.unpack_from(data, pos)
    pos += _V2_TIME.size
    payload = data[pos:]

    src = Address(src_ip, sport)
    dst = Address(dst_ip, dport)
    packet = Packet(4 if family == HEP_FAMILY_INET else 6, proto, src, dst, 0)
    packet.add_frame(build_frame((seconds, microseconds), payload, src, dst))
    packet.type = PacketType.SIP_UDP
    packet.payload = payload
    return packet


def _chunk(chunk_type: ChunkType, body: bytes) -> bytes:
    return _CHUNK.pack(0, chunk_type, _CHUNK.size + len(body)) + body


def encode_v3(packet: Packet, capture_id: int = 0, password: str | None = None) -> bytes:
    """Encapsulate a packet's payload in a HEPv3 message.

    An authentication chunk is added when a password is given.
    """
    seconds, microseconds = packet.timestamp
    chunks = [
        _chunk(ChunkType.FAMILY, bytes([_family(packet.ip_version)])),
        _chunk(ChunkType.PROTO, bytes([packet.proto & 0xFF])),
        _chunk(ChunkType.SRC_PORT, struct.pack("!H", packet.src.port & 0xFFFF)),
        _chunk(ChunkType.DST_PORT, struct.pack("!H", packet.dst.port & 0xFFFF)),
        _chunk(ChunkType.TS_SEC, struct.pack("!I", seconds & 0xFFFFFFFF)),
        _chunk(ChunkType.TS_USEC, struct.pack("!I", microseconds & 0xFFFFFFFF)),
        _chunk(ChunkType.PROTO_TYPE, b"\x01"),
        _chunk(ChunkType.CAPT_ID, struct.pack("!I", capture_id & 0xFFFFFFFF)),
    ]
    if packet.ip_version == 4:
        chunks.append(_chunk(ChunkType.SRC_IP4, _packed_ip(packet.src.ip, 4)))
        chunks.append(_chunk(ChunkType.DST_IP4, _packed_ip(packet.dst.ip, 4)))
    elif packet.ip_version == 6:
        chunks.append(_chunk(ChunkType.SRC_IP6, _packed_ip(packet.src.ip, 6)))
        chunks.append(_chunk(ChunkType.DST_IP6, _packed_ip(packet.dst.ip, 6)))
    if password is not None:
        chunks.append(_chunk(ChunkType.AUTH_KEY, password.encode()))
    chunks.append(_chunk(ChunkType.PAYLOAD, bytes(packet.payload)))

    body = b"".join(chunks)
    total = _CTRL_LEN + len(body)
    if total > 0xFFFF:
        raise HepError(f"HEPv3 message too long ({total} bytes)")
    return HEP3_ID + struct.pack("!H", total) + body


def decode_v3(data: bytes, password: str | None = None) -> Packet:
    """Build a packet from a HEPv3 message.

    When a password is given the message must carry an authentication key
    starting with it. Raises HepError for malformed or rejected messages.
    """
    data = bytes(data)
    if len(data) < _CTRL_LEN or data[:4] != HEP3_ID:
        raise HepError("not a HEPv3 message")
    (total_len,) = struct.unpack_from("!H", data, 4)

    family = proto = 0
    src_ip = dst_ip = ""
    sport = dport = 0
    seconds = microseconds = 0
    received_key = b""
    payload = b""

    pos = _CTRL_LEN
    while pos < total_len:
        if pos + _CHUNK.size > len(data):
            raise HepError("HEPv3 chunk header truncated")
        vendor, chunk_type, length = _CHUNK.unpack_from(data, pos)
        if length == 0:
            raise HepError("HEPv3 chunk with zero length")
        if pos + length > len(data):
            raise HepError("HEPv3 chunk truncated")
        body = data[pos + _CHUNK.size:pos + length]
        pos += length
        if vendor != 0:
            continue
        try:
            if chunk_type == ChunkType.INVALID:
                raise HepError("HEPv3 chunk of invalid type")
            if chunk_type == ChunkType.FAMILY:
                family = body[0]
            elif chunk_type == ChunkType.PROTO:
                proto = body[0]
            elif chunk_type in (ChunkType.SRC_IP4, ChunkType.DST_IP4):
                ip = str(ipaddress.IPv4Address(body[:4]))
                if chunk_type == ChunkType.SRC_IP4:
                    src_ip = ip
                else:
                    dst_ip = ip
            elif chunk_type in (ChunkType.SRC_IP6, ChunkType.DST_IP6):
                ip = str(ipaddress.IPv6Address(body[:16]))
                if chunk_type == ChunkType.SRC_IP6:
                    src_ip = ip
                else:
                    dst_ip = ip
            elif chunk_type == ChunkType.SRC_PORT:
                (sport,) = struct.unpack_from("!H", body)
            elif chunk_type == ChunkType.DST_PORT:
                (dport,) = struct.unpack_from("!H", body)
            elif chunk_type == ChunkType.TS_SEC:
                (seconds,) = struct.unpack_from("!I", body)
            elif chunk_type == ChunkType.TS_USEC:
                (microseconds,) = struct.unpack_from("!I", body)
            elif chunk_type == ChunkType.AUTH_KEY:
                received_key = body.split(b"\0", 1)[0]
            elif chunk_type == ChunkType.PAYLOAD:
                payload = body
        except (IndexError, struct.error, ipaddress.AddressValueError) as err:
            raise HepError(f"HEPv3 chunk {chunk_type} too short") from err

    if password is not None:
        if not received_key:
            raise HepError("HEPv3 message carries no authentication key")
        if not received_key.startswith(password.encode()):
            raise HepError("HEPv3 authentication key does not match")

    src = Address(src_ip, sport)
    dst = Address(dst_ip, dport)
    packet = Packet(4 if family == HEP_FAMILY_INET else 6, proto, src, dst, 0)
    packet.add_frame(build_frame((seconds, microseconds), payload, src, dst))
    packet.type = PacketType.SIP_UDP
    packet.payload = payload
    return packet


def parse_url(url: str) -> tuple[str, str]:
    """Split a ``proto:address:port`` URL into its address and port.

    Raises ValueError when the URL does not have that form.
    """
    match = _URL_RE.match(url)
    if match is None:
        raise ValueError(f"invalid HEP url: {url!r}")
    return match.group(1), match.group(2)