"""
RTP (Real-time Transport Protocol) packet parsing and serialization.
Only the fixed header is interpreted; CSRC lists and header extensions are carried through untouched.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

RTP_HEADER_SIZE = 12
RTP_VERSION = 2


@dataclass
class RtpPacket:
    """Parsed RTP packet structure."""
    payload_type: int
    sequence_number: int
    timestamp: int
    ssrc: int
    payload: bytes = b""
    marker: bool = False
    padding: bool = False
    extension: bool = False
    csrc_count: int = 0
    version: int = RTP_VERSION
    header_extra: bytes = b""  # CSRC identifiers and header extension

    @classmethod
    def parse(cls, data: bytes) -> Optional["RtpPacket"]:
        """Parse RTP packet from raw bytes; None if the datagram is not RTP."""
        if len(data) < RTP_HEADER_SIZE:
            logger.debug(f"Received short RTP packet: {len(data)} bytes")
            return None

        byte0, byte1, sequence_number, timestamp, ssrc = struct.unpack('!BBHII', data[:RTP_HEADER_SIZE])

        version = (byte0 >> 6) & 0x3
        if version != RTP_VERSION:
            logger.debug(f"Ignoring packet with RTP version {version}")
            return None

        padding = bool((byte0 >> 5) & 0x1)
        extension = bool((byte0 >> 4) & 0x1)
        csrc_count = byte0 & 0xF

        header_length = RTP_HEADER_SIZE + csrc_count * 4
        if extension:
            if len(data) < header_length + 4:
                return None
            ext_words = struct.unpack('!H', data[header_length + 2:header_length + 4])[0]
            header_length += 4 + ext_words * 4
        if len(data) < header_length:
            return None

        return cls(
            version=version,
            padding=padding,
            extension=extension,
            csrc_count=csrc_count,
            marker=bool((byte1 >> 7) & 0x1),
            payload_type=byte1 & 0x7F,
            sequence_number=sequence_number,
            timestamp=timestamp,
            ssrc=ssrc,
            header_extra=data[RTP_HEADER_SIZE:header_length],
            payload=data[header_length:],
        )

    def serialize(self) -> bytes:
        byte0 = (self.version << 6) | (int(self.padding) << 5) | (int(self.extension) << 4) | (self.csrc_count & 0xF)
        byte1 = (int(self.marker) << 7) | (self.payload_type & 0x7F)
        header = struct.pack(
            '!BBHII',
            byte0,
            byte1,
            self.sequence_number & 0xFFFF,
            self.timestamp & 0xFFFFFFFF,
            self.ssrc & 0xFFFFFFFF,
        )
        return header + self.header_extra + self.payload
