"""Link-layer decoding plus IP fragment and TCP segment reassembly."""

from __future__ import annotations

import ipaddress
import struct
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum, auto

from sipflow.address import Address
from sipflow.packet import Frame, Packet, PacketType

#: Largest assembled packet (or payload) that is worth keeping.
MAX_CAPTURE_LEN = 20480

#: Ethernet type of an 802.1Q VLAN tag.
ETHERTYPE_8021Q = 0x8100

#: NFLOG attribute type that carries the captured packet.
NFULA_PAYLOAD = 9

IPPROTO_IPIP = 4
IPPROTO_TCP = 6
IPPROTO_UDP = 17
IPPROTO_FRAGMENT = 44

IP_MF = 0x2000
IP_OFFMASK = 0x1FFF
IP6F_OFF_MASK = 0xFFF8
IP6F_MORE_FRAG = 0x0001

TH_FIN = 0x01
TH_SYN = 0x02
TH_RST = 0x04
TH_PUSH = 0x08
TH_ACK = 0x10

WH_FIN = 0x80
WH_RSV = 0x70
WH_OPCODE = 0x0F
WH_MASK = 0x80
WH_LEN = 0x7F
WS_OPCODE_TEXT = 0x1

_IPV4_HDR_LEN = 20
_IPV6_HDR_LEN = 40
_IPV6_FRAG_LEN = 8


class LinkType(IntEnum):
    """Link-layer header types, with the values stored in capture files."""

    NULL = 0
    EN10MB = 1
    IEEE802 = 6
    SLIP = 8
    PPP = 9
    FDDI = 10
    PPP_SERIAL = 50
    PPP_ETHER = 51
    RAW = 101
    LOOP = 108
    ENC = 109
    LINUX_SLL = 113
    SLIP_BSDOS = 131
    PPP_BSDOS = 132
    IPNET = 226
    NFLOG = 239
    LINUX_SLL2 = 276


_LINK_HEADER_SIZES = {
    LinkType.EN10MB: 14,
    LinkType.IEEE802: 22,
    LinkType.LOOP: 4,
    LinkType.NULL: 4,
    LinkType.SLIP: 16,
    LinkType.SLIP_BSDOS: 16,
    LinkType.PPP: 4,
    LinkType.PPP_BSDOS: 4,
    LinkType.PPP_SERIAL: 4,
    LinkType.PPP_ETHER: 4,
    LinkType.RAW: 0,
    LinkType.FDDI: 21,
    LinkType.ENC: 12,
    LinkType.NFLOG: 4,
    LinkType.LINUX_SLL: 16,
    LinkType.LINUX_SLL2: 20,
    LinkType.IPNET: 24,
}


def datalink_size(datalink: int) -> int:
    """Return the link-layer header size for a link type.

    Raises ValueError for link types that cannot be decoded.
    """
    size = _LINK_HEADER_SIZES.get(datalink)
    if size is None:
        raise ValueError(f"Unable to handle linktype {datalink}")
    return size


class SipValidation(Enum):
    """Outcome of checking whether a TCP payload holds whole SIP messages."""

    NOT_SIP = auto()
    PARTIAL_SIP = auto()
    COMPLETE_SIP = auto()
    MULTIPLE_SIP = auto()


#: Checks a payload; returns the verdict and the length of the first message.
SipValidator = Callable[[bytes], "tuple[SipValidation, int]"]


@dataclass(frozen=True)
class TcpHeader:
    """The fixed part of a TCP header."""

    src_port: int
    dst_port: int
    seq: int
    ack: int
    data_offset: int
    flags: int

    @classmethod
    def parse(cls, data: bytes) -> TcpHeader:
        """Decode a TCP header from the start of ``data``."""
        if len(data) < 20:
            raise ValueError("TCP header needs at least 20 bytes")
        sport, dport, seq, ack, offset, flags = struct.unpack_from("!HHIIBB", data)
        return cls(sport, dport, seq, ack, offset >> 4, flags)

    @property
    def header_length(self) -> int:
        """Header length in bytes, options included."""
        return self.data_offset * 4

    @property
    def push(self) -> bool:
        """True when the PSH flag is set."""
        return bool(self.flags & TH_PUSH)


@dataclass(frozen=True)
class _IpHeader:
    version: int
    header_len: int
    proto: int
    length: int
    ident: int
    fragmented: bool
    frag_offset: int
    more_fragments: bool
    src: Address
    dst: Address


def _parse_ip(data: bytes, offset: int) -> _IpHeader | None:
    if len(data) < offset + _IPV4_HDR_LEN:
        return None
    version = data[offset] >> 4
    if version == 4:
        ihl = (data[offset] & 0x0F) * 4
        length, ident, ip_off, proto = struct.unpack_from("!2xHHHxB", data, offset)
        frag = ip_off & (IP_MF | IP_OFFMASK)
        src = ipaddress.IPv4Address(data[offset + 12:offset + 16])
        dst = ipaddress.IPv4Address(data[offset + 16:offset + 20])
        return _IpHeader(
            version=4,
            header_len=ihl,
            proto=proto,
            length=length,
            ident=ident,
            fragmented=bool(frag),
            frag_offset=(ip_off & IP_OFFMASK) * 8 if frag else 0,
            more_fragments=bool(ip_off & IP_MF),
            src=Address(str(src)),
            dst=Address(str(dst)),
        )
    if version == 6:
        if len(data) < offset + _IPV6_HDR_LEN:
            return None
        plen, proto = struct.unpack_from("!4xHB", data, offset)
        src = ipaddress.IPv6Address(data[offset + 8:offset + 24])
        dst = ipaddress.IPv6Address(data[offset + 24:offset + 40])
        fragmented = proto == IPPROTO_FRAGMENT
        frag_offset = ident = 0
        more = False
        if fragmented:
            if len(data) < offset + _IPV6_HDR_LEN + _IPV6_FRAG_LEN:
                return None
            offlg, ident = struct.unpack_from("!2xHI", data, offset + _IPV6_HDR_LEN)
            frag_offset = offlg & IP6F_OFF_MASK
            more = bool(offlg & IP6F_MORE_FRAG)
        return _IpHeader(
            version=6,
            header_len=_IPV6_HDR_LEN,
            proto=proto,
            length=plen + _IPV6_HDR_LEN,
            ident=ident,
            fragmented=fragmented,
            frag_offset=frag_offset,
            more_fragments=more,
            src=Address(str(src)),
            dst=Address(str(dst)),
        )
    return None


def _fragment(data: bytes, link_hl: int, version: int) -> tuple[int, bytes, int, int]:
    """Return offset, content, declared length and next header of one fragment."""
    if version == 4:
        ihl = (data[link_hl] & 0x0F) * 4
        length, ip_off = struct.unpack_from("!2xH2xH", data, link_hl)
        content = data[link_hl + ihl:link_hl + length]
        return (ip_off & IP_OFFMASK) * 8, content, length - ihl, 0
    (plen,) = struct.unpack_from("!4xH", data, link_hl)
    start = link_hl + _IPV6_HDR_LEN
    nxt, offlg = struct.unpack_from("!BxH", data, start)
    content = data[start + _IPV6_FRAG_LEN:start + plen]
    return offlg & IP6F_OFF_MASK, content, plen - _IPV6_FRAG_LEN, nxt


def _discard(pending: list[Packet], packet: Packet) -> None:
    pending[:] = [p for p in pending if p is not packet]


class Reassembler:
    """Turns frames of one capture source into IP packets and TCP messages.

    Fragments and segments that are not complete yet are kept in
    :attr:`ip_pending` and :attr:`tcp_pending`.
    """

    def __init__(self, link: int = LinkType.EN10MB) -> None:
        self.link = link
        self.link_hl = datalink_size(link)
        self.ip_pending: list[Packet] = []
        self.tcp_pending: list[Packet] = []

    def _link_header_length(self, data: bytes) -> int | None:
        link_hl = self.link_hl
        if self.link == LinkType.EN10MB and len(data) >= 14:
            if struct.unpack_from("!H", data, 12)[0] == ETHERTYPE_8021Q:
                link_hl += 4
        elif self.link == LinkType.LINUX_SLL and len(data) >= 16:
            if struct.unpack_from("!H", data, 14)[0] == ETHERTYPE_8021Q:
                link_hl += 4
        elif self.link == LinkType.NFLOG:
            while link_hl + 8 <= len(data):
                tlv_len, tlv_type = struct.unpack_from("<HH", data, link_hl)
                if tlv_type == NFULA_PAYLOAD:
                    link_hl += 4
                    break
                if tlv_len < 4:
                    return None
                link_hl += (tlv_len + 3) & ~3
        return link_hl

    def reassemble_ip(self, frame: Frame) -> tuple[Packet, bytes] | None:
        """Feed one frame.

        Returns the packet and its IP payload (transport header included)
        once a whole IP packet is available, or None while fragments are
        still missing or when the frame holds no usable IP packet.
        """
        data = frame.data
        caplen = len(data)
        link_hl = self._link_header_length(data)
        if link_hl is None or link_hl >= caplen:
            return None

        size = caplen - self.link_hl
        header: _IpHeader | None = None
        while size >= _IPV4_HDR_LEN:
            header = _parse_ip(data, link_hl)
            if header is None:
                return None
            # Trailing bytes after the IP packet (e.g. Ethernet padding) are dropped
            caplen = link_hl + header.length
            size = caplen - link_hl - header.header_len
            if header.proto != IPPROTO_IPIP:
                break
            link_hl += header.header_len

        if header is None or caplen > MAX_CAPTURE_LEN:
            return None

        if not header.fragmented:
            packet = Packet(header.version, header.proto, header.src, header.dst, header.ident)
            packet.add_frame(frame)
            return packet, data[link_hl + header.header_len:caplen]

        packet = next(
            (
                p
                for p in self.ip_pending
                if p.src == header.src and p.dst == header.dst and p.ip_id == header.ident
            ),
            None,
        )
        if packet is None:
            packet = Packet(header.version, header.proto, header.src, header.dst, header.ident)
            packet.add_frame(frame)
            self.ip_pending.append(packet)
        else:
            packet.add_frame(frame)

        extra = _IPV6_FRAG_LEN if header.version == 6 else 0
        packet.ip_cap_len += header.length - header.header_len - extra
        if not header.more_fragments:
            packet.ip_exp_len = header.frag_offset + header.length - header.header_len - extra

        if packet.ip_cap_len != packet.ip_exp_len:
            return None

        fragments = [_fragment(f.data, link_hl, header.version) for f in packet.frames]
        total = sum(declared for _, _, declared, _ in fragments)
        if total > MAX_CAPTURE_LEN:
            return None

        assembled = bytearray(total)
        for offset, content, _, next_header in fragments:
            end = offset + len(content)
            if end > len(assembled):
                assembled.extend(bytes(end - len(assembled)))
            assembled[offset:end] = content
            if header.version == 6:
                packet.proto = next_header

        _discard(self.ip_pending, packet)
        return packet, bytes(assembled[:total])

    def reassemble_tcp(
        self,
        packet: Packet,
        tcp: TcpHeader,
        payload: bytes,
        validator: SipValidator,
    ) -> Packet | None:
        """Feed one TCP segment.

        Returns a packet whose payload is ready to be parsed, or None while
        more segments are needed or the assembled data grew too large.
        """
        if not payload:
            return packet

        pending = next(
            (p for p in self.tcp_pending if p.src == packet.src and p.dst == packet.dst),
            None,
        )
        if pending is None:
            pending = packet
            self.tcp_pending.append(packet)
            first_segment = True
        else:
            for frame in packet.frames:
                pending.add_frame(frame)
            first_segment = False

        if pending.tcp_seq == 0:
            pending.tcp_seq = tcp.seq

        if first_segment:
            pending.payload = bytes(payload)
        else:
            if len(pending.payload) + len(payload) > MAX_CAPTURE_LEN:
                _discard(self.tcp_pending, pending)
                return None
            if pending.tcp_seq < tcp.seq:
                pending.tcp_seq = tcp.seq
                pending.payload = pending.payload + bytes(payload)
            else:
                pending.payload = bytes(payload) + pending.payload

        if len(pending.payload) > MAX_CAPTURE_LEN:
            _discard(self.tcp_pending, pending)
            return None

        full = pending.payload
        status, length = validator(full)
        if status is SipValidation.COMPLETE_SIP:
            _discard(self.tcp_pending, pending)
            return pending
        if status is SipValidation.MULTIPLE_SIP:
            _discard(self.tcp_pending, pending)
            pending.payload = full[:length]
            rest = full[length:]
            if 0 < len(rest) < MAX_CAPTURE_LEN:
                follow = pending.clone()
                follow.payload = rest
                self.tcp_pending.append(follow)
            return pending
        if status is SipValidation.NOT_SIP and tcp.push:
            _discard(self.tcp_pending, pending)
            return pending
        return None


def unwrap_websocket(packet: Packet) -> bool:
    """Replace a WebSocket text frame payload with its unmasked content.

    Only frames using an extended payload length are recognised. Returns
    True when the packet payload was replaced.
    """
    payload = packet.payload
    size = len(payload)
    if size <= 2:
        return False
    if payload[0] & WH_OPCODE != WS_OPCODE_TEXT:
        return False

    masked = bool(payload[1] & WH_MASK)
    ws_len = payload[1] & WH_LEN
    if ws_len == 126:
        offset = 4
    elif ws_len == 127:
        offset = 10
    else:
        return False

    if size - offset <= 0:
        return False
    key = b""
    if masked:
        if size - offset - 4 <= 0:
            return False
        key = payload[offset:offset + 4]
        offset += 4

    content = payload[offset:]
    if not content:
        return False
    if masked:
        content = bytes(b ^ key[i % 4] for i, b in enumerate(content))

    packet.payload = content
    packet.type = PacketType.SIP_WSS if packet.type is PacketType.SIP_TLS else PacketType.SIP_WS
    return True