import ipaddress
import struct

import pytest

from sipflow.address import Address
from sipflow.packet import Frame, Packet, PacketType
from sipflow.reassembly import (
    MAX_CAPTURE_LEN,
    LinkType,
    Reassembler,
    SipValidation,
    TcpHeader,
    datalink_size,
    unwrap_websocket,
)

SRC = "192.0.2.10"
DST = "192.0.2.20"


def ipv4(src, dst, proto, body, ident=0, flags_off=0):
    header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        20 + len(body),
        ident,
        flags_off,
        64,
        proto,
        0,
        ipaddress.IPv4Address(src).packed,
        ipaddress.IPv4Address(dst).packed,
    )
    return header + body


def ipv6(src, dst, nxt, body):
    return (
        struct.pack("!IHBB", 0x60000000, len(body), nxt, 64)
        + ipaddress.IPv6Address(src).packed
        + ipaddress.IPv6Address(dst).packed
        + body
    )


def eth(body, ethertype=0x0800):
    return b"\x02" * 6 + b"\x04" * 6 + struct.pack("!H", ethertype) + body


def udp(sport, dport, data):
    return struct.pack("!HHHH", sport, dport, 8 + len(data), 0) + data


def frame(data):
    return Frame(1, 0, data)


def fake_validator(payload):
    end = payload.find(b"\r\n\r\n")
    if end == -1:
        return SipValidation.PARTIAL_SIP, 0
    end += 4
    if end == len(payload):
        return SipValidation.COMPLETE_SIP, end
    return SipValidation.MULTIPLE_SIP, end


def not_sip(payload):
    return SipValidation.NOT_SIP, 0


def tcp_packet():
    packet = Packet(4, 6, Address(SRC, 5060), Address(DST, 5061))
    packet.add_frame(frame(b"frame"))
    return packet


def tcp_header(seq, flags=0x10):
    return TcpHeader.parse(struct.pack("!HHIIBBHHH", 5060, 5061, seq, 0, 5 << 4, flags, 0, 0, 0))


@pytest.mark.parametrize(
    "link, size",
    [
        (LinkType.EN10MB, 14),
        (LinkType.NULL, 4),
        (LinkType.RAW, 0),
        (LinkType.LINUX_SLL, 16),
        (LinkType.NFLOG, 4),
    ],
)
def test_datalink_size(link, size):
    assert datalink_size(link) == size


def test_datalink_size_unknown():
    with pytest.raises(ValueError):
        datalink_size(9999)


def test_unfragmented_udp():
    datagram = udp(5060, 5080, b"INVITE")
    result = Reassembler().reassemble_ip(frame(eth(ipv4(SRC, DST, 17, datagram))))
    packet, transport = result
    assert transport == datagram
    assert packet.src == Address(SRC)
    assert packet.dst == Address(DST)
    assert packet.proto == 17
    assert packet.ip_version == 4
    assert len(packet.frames) == 1


def test_ethernet_trailer_dropped():
    datagram = udp(5060, 5080, b"OPTIONS")
    data = eth(ipv4(SRC, DST, 17, datagram)) + b"\x00" * 6
    _, transport = Reassembler().reassemble_ip(frame(data))
    assert transport == datagram


def test_vlan_tag_skipped():
    datagram = udp(5060, 5080, b"BYE")
    data = eth(b"\x00\x07\x08\x00" + ipv4(SRC, DST, 17, datagram), ethertype=0x8100)
    packet, transport = Reassembler().reassemble_ip(frame(data))
    assert transport == datagram
    assert packet.src.ip == SRC


def test_linux_sll():
    datagram = udp(5060, 5080, b"ACK")
    sll = b"\x00" * 14 + struct.pack("!H", 0x0800)
    packet, transport = Reassembler(LinkType.LINUX_SLL).reassemble_ip(
        frame(sll + ipv4(SRC, DST, 17, datagram))
    )
    assert transport == datagram
    assert packet.dst.ip == DST


def test_nflog_payload_tlv():
    datagram = udp(5060, 5080, b"REGISTER")
    ip = ipv4(SRC, DST, 17, datagram)
    data = (
        b"\x02\x00\x00\x00"
        + struct.pack("<HH", 8, 1)
        + b"\x00" * 4
        + struct.pack("<HH", 4 + len(ip), 9)
        + ip
    )
    packet, transport = Reassembler(LinkType.NFLOG).reassemble_ip(frame(data))
    assert transport == datagram
    assert packet.src.ip == SRC


def test_ipip_tunnel_uses_inner_header():
    datagram = udp(5060, 5080, b"INFO")
    inner = ipv4("198.51.100.1", "198.51.100.2", 17, datagram)
    outer = ipv4(SRC, DST, 4, inner)
    packet, transport = Reassembler().reassemble_ip(frame(eth(outer)))
    assert transport == datagram
    assert packet.src.ip == "198.51.100.1"
    assert packet.dst.ip == "198.51.100.2"
    assert packet.proto == 17


def test_unknown_ip_version():
    assert Reassembler().reassemble_ip(frame(eth(b"\x55" + b"\x00" * 30))) is None


def test_truncated_frame():
    assert Reassembler().reassemble_ip(frame(eth(b"\x45" + b"\x00" * 5))) is None


def test_ipv4_fragments_in_order():
    datagram = udp(5060, 5060, b"X" * 40)
    first = ipv4(SRC, DST, 17, datagram[:24], ident=0x1234, flags_off=0x2000)
    second = ipv4(SRC, DST, 17, datagram[24:], ident=0x1234, flags_off=3)
    reasm = Reassembler()
    assert reasm.reassemble_ip(frame(eth(first))) is None
    assert len(reasm.ip_pending) == 1
    packet, transport = reasm.reassemble_ip(frame(eth(second)))
    assert transport == datagram
    assert len(packet.frames) == 2
    assert packet.ip_id == 0x1234
    assert reasm.ip_pending == []


def test_ipv4_fragments_last_first():
    datagram = udp(5060, 5060, b"Y" * 40)
    first = ipv4(SRC, DST, 17, datagram[:24], ident=7, flags_off=0x2000)
    second = ipv4(SRC, DST, 17, datagram[24:], ident=7, flags_off=3)
    reasm = Reassembler()
    assert reasm.reassemble_ip(frame(eth(second))) is None
    _, transport = reasm.reassemble_ip(frame(eth(first)))
    assert transport == datagram


def test_ipv6_unfragmented():
    datagram = udp(5060, 5080, b"NOTIFY")
    packet, transport = Reassembler().reassemble_ip(
        frame(eth(ipv6("2001:db8::1", "2001:db8::2", 17, datagram), ethertype=0x86DD))
    )
    assert transport == datagram
    assert packet.ip_version == 6
    assert packet.src.ip == "2001:db8::1"
    assert packet.dst.ip == "2001:db8::2"


def test_ipv6_fragments():
    datagram = udp(5060, 5060, b"Z" * 40)
    frag1 = struct.pack("!BBHI", 17, 0, 0 | 1, 9) + datagram[:24]
    frag2 = struct.pack("!BBHI", 17, 0, 24, 9) + datagram[24:]
    reasm = Reassembler()
    assert reasm.reassemble_ip(frame(eth(ipv6("2001:db8::1", "2001:db8::2", 44, frag1)))) is None
    packet, transport = reasm.reassemble_ip(
        frame(eth(ipv6("2001:db8::1", "2001:db8::2", 44, frag2)))
    )
    assert transport == datagram
    assert packet.proto == 17
    assert reasm.ip_pending == []


def test_tcp_header_parse():
    header = TcpHeader.parse(struct.pack("!HHIIBBHHH", 5060, 5061, 1000, 2000, 5 << 4, 0x18, 0, 0, 0))
    assert header.src_port == 5060
    assert header.dst_port == 5061
    assert header.seq == 1000
    assert header.ack == 2000
    assert header.header_length == 20
    assert header.push


def test_tcp_header_too_short():
    with pytest.raises(ValueError):
        TcpHeader.parse(b"\x00" * 10)


def test_tcp_empty_payload_passes_through():
    packet = tcp_packet()
    assert Reassembler().reassemble_tcp(packet, tcp_header(1), b"", fake_validator) is packet


def test_tcp_complete_message():
    reasm = Reassembler()
    message = b"OPTIONS sip:a SIP/2.0\r\n\r\n"
    result = reasm.reassemble_tcp(tcp_packet(), tcp_header(100), message, fake_validator)
    assert result.payload == message
    assert reasm.tcp_pending == []


def test_tcp_segments_appended():
    reasm = Reassembler()
    assert reasm.reassemble_tcp(tcp_packet(), tcp_header(100), b"INVITE sip:a", fake_validator) is None
    assert len(reasm.tcp_pending) == 1
    result = reasm.reassemble_tcp(tcp_packet(), tcp_header(112), b" SIP/2.0\r\n\r\n", fake_validator)
    assert result.payload == b"INVITE sip:a SIP/2.0\r\n\r\n"
    assert len(result.frames) == 2
    assert result.tcp_seq == 112
    assert reasm.tcp_pending == []


def test_tcp_segment_prepended_when_older():
    reasm = Reassembler()
    assert reasm.reassemble_tcp(tcp_packet(), tcp_header(200), b" SIP/2.0", fake_validator) is None
    result = reasm.reassemble_tcp(tcp_packet(), tcp_header(100), b"BYE sip:a\r\n\r\n", fake_validator)
    assert result is None
    assert reasm.tcp_pending[0].payload == b"BYE sip:a\r\n\r\n SIP/2.0"


def test_tcp_multiple_messages_keep_remainder():
    reasm = Reassembler()
    first = b"ACK sip:a SIP/2.0\r\n\r\n"
    rest = b"BYE sip:a"
    result = reasm.reassemble_tcp(tcp_packet(), tcp_header(100), first + rest, fake_validator)
    assert result.payload == first
    assert len(reasm.tcp_pending) == 1
    assert reasm.tcp_pending[0].payload == rest
    assert reasm.tcp_pending[0] is not result


def test_tcp_not_sip_waits_for_push():
    reasm = Reassembler()
    assert reasm.reassemble_tcp(tcp_packet(), tcp_header(100), b"junk", not_sip) is None
    result = reasm.reassemble_tcp(tcp_packet(), tcp_header(104, flags=0x18), b"more", not_sip)
    assert result.payload == b"junkmore"
    assert reasm.tcp_pending == []


def test_tcp_too_large_dropped():
    reasm = Reassembler()
    big = b"A" * (MAX_CAPTURE_LEN - 10)
    assert reasm.reassemble_tcp(tcp_packet(), tcp_header(100), big, fake_validator) is None
    assert reasm.reassemble_tcp(tcp_packet(), tcp_header(200), b"B" * 20, fake_validator) is None
    assert reasm.tcp_pending == []


def ws_packet(payload, packet_type=PacketType.SIP_TCP):
    packet = Packet(4, 6, Address(SRC, 5060), Address(DST, 8080))
    packet.payload = payload
    packet.type = packet_type
    return packet


def test_websocket_unmasked():
    content = b"MESSAGE sip:a SIP/2.0"
    packet = ws_packet(b"\x81\x7e" + struct.pack("!H", len(content)) + content)
    assert unwrap_websocket(packet)
    assert packet.payload == content
    assert packet.type is PacketType.SIP_WS


def test_websocket_masked_over_tls():
    content = b"REGISTER sip:a SIP/2.0"
    key = b"\x01\x02\x03\x04"
    masked = bytes(b ^ key[i % 4] for i, b in enumerate(content))
    packet = ws_packet(
        b"\x81\xfe" + struct.pack("!H", len(content)) + key + masked, PacketType.SIP_TLS
    )
    assert unwrap_websocket(packet)
    assert packet.payload == content
    assert packet.type is PacketType.SIP_WSS


def test_websocket_short_length_ignored():
    payload = b"\x81\x05hello"
    packet = ws_packet(payload)
    assert not unwrap_websocket(packet)
    assert packet.payload == payload
    assert packet.type is PacketType.SIP_TCP


def test_websocket_binary_ignored():
    payload = b"\x82\x7e\x00\x03abc"
    packet = ws_packet(payload)
    assert not unwrap_websocket(packet)
    assert packet.payload == payload


def test_websocket_too_short():
    packet = ws_packet(b"\x81\x7e")
    assert not unwrap_websocket(packet)
    assert packet.payload == b"\x81\x7e"