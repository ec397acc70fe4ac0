# sipflow

`sipflow` is a library of building blocks for handling captured SIP traffic.
Given raw link-layer frames it:

- strips link-layer headers (Ethernet with or without a VLAN tag, Linux SLL
  and SLL2, NFLOG, loopback, PPP, raw IP and more);
- reassembles fragmented IPv4 and IPv6 datagrams and follows IP-in-IP
  tunnels;
- joins SIP messages split across TCP segments;
- unwraps SIP carried in WebSocket text frames;
- encodes and decodes HEP/EEP versions 2 and 3, and sends and receives them
  over UDP.

## Modules

| Module | Purpose |
| --- | --- |
| `sipflow.address` | `Address` (IP and port), `address_from_str`, `address_is_local` |
| `sipflow.packet` | `Packet`, `Frame` and `PacketType` |
| `sipflow.reassembly` | `Reassembler`, `TcpHeader`, `LinkType`, `SipValidation`, `datalink_size`, `unwrap_websocket` |
| `sipflow.hep` | `encode_v2`, `encode_v3`, `decode_v2`, `decode_v3`, `build_frame`, `parse_url`, `ChunkType`, `HepError` |
| `sipflow.hep_transport` | `HepClient` and `HepServer` for HEP over UDP |

## Addresses

```python
from sipflow.address import Address, address_from_str

addr = address_from_str("10.0.0.1:5060")
print(addr.ip, addr.port)                 # 10.0.0.1 5060
addr == Address("10.0.0.1", 5080)         # False: ports differ
addr.same_ip(Address("10.0.0.1", 5080))   # True
```

A string without a port, or one longer than an address and port can be,
gives an empty `Address()`, as a malformed one does. `address_is_local`
tells whether the IP belongs to one of this machine's network interfaces.

## Packets and frames

A `Frame` holds the captured bytes of one link-layer frame and its timestamp
as seconds and microseconds. A `Packet` gathers the frames it was built from
together with its IP version, transport protocol, source and destination,
payload and `PacketType`. `Packet.clone()` gives an independent copy and
`Packet.free_frames()` drops the captured bytes while keeping timestamps.

## Reassembly

```python
from sipflow.reassembly import LinkType, Reassembler, TcpHeader, datalink_size

datalink_size(LinkType.EN10MB)   # 14
reasm = Reassembler(LinkType.EN10MB)

result = reasm.reassemble_ip(frame)
if result is not None:
    packet, ip_payload = result   # ip_payload starts with the transport header
```

`datalink_size` raises `ValueError` for link types it cannot strip, and so
does the `Reassembler` constructor. `reassemble_ip` returns `None` while
fragments are still missing, or when the frame holds no usable IP packet or
the datagram is larger than `MAX_CAPTURE_LEN` (20480 bytes).

For TCP, decode the header with `TcpHeader.parse` and pass the segment to
`reassemble_tcp` together with a validator: a callable that takes the
payload gathered so far and returns a `SipValidation` and the length of the
first message. `COMPLETE_SIP` releases the packet; `MULTIPLE_SIP` releases
the first message and keeps the rest pending; `NOT_SIP` releases the data
once a segment with the PSH flag arrives; anything else keeps waiting.

`unwrap_websocket(packet)` replaces the payload of a WebSocket text frame
(with an extended length field) with its unmasked content, marks the packet
`SIP_WS` (or `SIP_WSS` if it was `SIP_TLS`) and returns `True`.

## HEP/EEP

```python
from sipflow.address import Address
from sipflow.hep import decode_v3, encode_v3
from sipflow.packet import Frame, Packet

packet = Packet(4, 17, Address("10.0.0.1", 5060), Address("10.0.0.2", 5060))
packet.add_frame(Frame(1700000000, 0, b""))
packet.payload = b"OPTIONS sip:bob@example.com SIP/2.0\r\n\r\n"

password = "password"
data = encode_v3(packet, 2001, password)
received = decode_v3(data, password)
```

Decoded packets carry a synthetic Ethernet/IPv4/UDP frame built by
`build_frame`. Malformed messages, and v3 messages whose authentication key
does not match the expected one, raise `HepError`. `parse_url` splits URLs
of the form `proto:address:port`, such as `udp:10.10.0.100:9060`, into
address and port and raises `ValueError` otherwise.

`HepClient(host, port, version=3, capture_id=0, password=None)` sends packets
(RTP packets are skipped and `send` returns `False`).
`HepServer(host, port, version=3, password=None, timeout=None)` binds a UDP
socket; `receive()` returns a `Packet`, or `None` for a message that is not
valid HEP of its version. Both are context managers and have `close()`.

## What sipflow does not do

`sipflow` works on frames you hand to it. It does not read or write capture
files, does not capture live from network interfaces, does not parse SIP
messages or group them into calls, does not decrypt TLS, and has no
command-line program or terminal interface.