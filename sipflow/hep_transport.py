"""UDP sockets that send and receive packets encapsulated in HEP/EEP."""

from __future__ import annotations

import socket

from sipflow.hep import HepError, decode_v2, decode_v3, encode_v2, encode_v3
from sipflow.packet import Packet, PacketType
from sipflow.reassembly import MAX_CAPTURE_LEN

_VERSIONS = (2, 3)


def _check_version(version: int) -> int:
    if version not in _VERSIONS:
        raise ValueError(f"unsupported HEP version {version}; expected 2 or 3")
    return version


def _resolve(host: str, port: str | int, role: str) -> tuple:
    try:
        infos = socket.getaddrinfo(
            host,
            str(port),
            socket.AF_UNSPEC,
            socket.SOCK_DGRAM,
            socket.IPPROTO_UDP,
            socket.AI_NUMERICSERV,
        )
    except socket.gaierror as err:
        raise OSError(f"EEP {role}: failed getaddrinfo() for {host}:{port}") from err
    if not infos:
        raise OSError(f"EEP {role}: failed getaddrinfo() for {host}:{port}")
    return infos[0]


class HepClient:
    """Sends captured packets to a HEP collector over UDP."""

    def __init__(
        self,
        host: str,
        port: str | int,
        version: int = 3,
        capture_id: int = 0,
        password: str | None = None,
    ) -> None:
        self.version = _check_version(version)
        self.host = host
        self.port = str(port)
        self.capture_id = capture_id
        self.password = password
        family, socktype, proto, _, sockaddr = _resolve(host, port, "client")
        self._sock: socket.socket | None = socket.socket(family, socktype, proto)
        try:
            self._sock.connect(sockaddr)
        except OSError:
            self._sock.close()
            self._sock = None
            raise

    def send(self, packet: Packet) -> bool:
        """Encapsulate and send a packet.

        RTP packets are never sent; returns False for them and True once
        the message has been handed to the socket. Raises OSError when
        the client is closed or the send fails.
        """
        if packet.type is PacketType.RTP:
            return False
        if self._sock is None:
            raise OSError("HEP client is closed")
        if self.version == 2:
            message = encode_v2(packet, self.capture_id)
        else:
            message = encode_v3(packet, self.capture_id, self.password)
        self._sock.send(message)
        return True

    def close(self) -> None:
        """Close the socket; calling it again does nothing."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> HepClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class HepServer:
    """Receives HEP messages on a UDP socket and turns them into packets."""

    def __init__(
        self,
        host: str,
        port: str | int,
        version: int = 3,
        password: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.version = _check_version(version)
        self.host = host
        self.password = password
        family, socktype, proto, _, sockaddr = _resolve(host, port, "server")
        self._sock: socket.socket | None = socket.socket(family, socktype, proto)
        try:
            self._sock.bind(sockaddr)
        except OSError as err:
            self._sock.close()
            self._sock = None
            raise OSError(f"Error binding address: {err}") from err
        self._sock.settimeout(timeout)

    @property
    def port(self) -> int:
        """Local port the server is bound to."""
        if self._sock is None:
            raise OSError("HEP server is closed")
        return self._sock.getsockname()[1]

    def receive(self) -> Packet | None:
        """Wait for one message and decode it.

        Returns None when the message is not valid HEP of the configured
        version or fails authentication. Raises OSError (TimeoutError on
        timeout) when the socket cannot be read.
        """
        if self._sock is None:
            raise OSError("HEP server is closed")
        data, _ = self._sock.recvfrom(MAX_CAPTURE_LEN)
        try:
            if self.version == 2:
                return decode_v2(data)
            return decode_v3(data, self.password)
        except HepError:
            return None

    def close(self) -> None:
        """Close the socket; calling it again does nothing."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> HepServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()