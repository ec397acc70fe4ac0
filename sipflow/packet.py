"""Captured packets and the link-layer frames they are built from."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, auto

from sipflow.address import Address


class PacketType(Enum):
    """Transport a packet payload was recognised as."""

    SIP_UDP = auto()
    SIP_TCP = auto()
    SIP_TLS = auto()
    SIP_WS = auto()
    SIP_WSS = auto()
    RTP = auto()


@dataclass(frozen=True)
class Frame:
    """One captured link-layer frame with its capture timestamp."""

    seconds: int
    microseconds: int
    data: bytes
    length: int | None = None

    def __post_init__(self) -> None:
        if self.length is None:
            object.__setattr__(self, "length", len(self.data))

    @property
    def caplen(self) -> int:
        """Number of bytes actually captured."""
        return len(self.data)

    @property
    def timestamp(self) -> tuple[int, int]:
        """Capture time as ``(seconds, microseconds)``."""
        return (self.seconds, self.microseconds)


@dataclass
class Packet:
    """A network packet assembled from one or more frames."""

    ip_version: int
    proto: int
    src: Address
    dst: Address
    ip_id: int = 0
    frames: list[Frame] = field(default_factory=list)
    type: PacketType | None = None
    payload: bytes = b""
    tcp_seq: int = 0
    ip_cap_len: int = 0
    ip_exp_len: int = 0

    def add_frame(self, frame: Frame) -> None:
        """Append a captured frame to this packet."""
        self.frames.append(frame)

    def clone(self) -> Packet:
        """Return a copy that can be changed without touching this packet."""
        return dataclasses.replace(self, frames=list(self.frames))

    def free_frames(self) -> None:
        """Drop the captured bytes of every frame, keeping their timestamps."""
        self.frames = [
            Frame(f.seconds, f.microseconds, b"", f.length) for f in self.frames
        ]

    @property
    def timestamp(self) -> tuple[int, int]:
        """Capture time of the first frame as ``(seconds, microseconds)``."""
        if not self.frames:
            raise ValueError("packet has no frames")
        return self.frames[0].timestamp