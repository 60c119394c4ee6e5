"""
Incremental message framing.

Bytes arrive from the socket in arbitrary fragments. MessageDecoder keeps the
parsed header between calls so a message split across any number of reads is
decoded exactly once, as soon as its last byte is available.
"""

import logging
from enum import Enum
from typing import Optional

from .errors import ParsingReason, ProtocolParsingError
from .wire import HEADER_SIZE, Frame, MessageHeader, decode_message

logger = logging.getLogger(__name__)

# Server default for maxMessageSizeBytes until the handshake says otherwise
DEFAULT_MAX_MESSAGE_SIZE = 48_000_000


class DecoderState(Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_BODY = "awaiting_body"


class MessageDecoder:
    """
    Streaming decoder: AWAITING_HEADER -> AWAITING_BODY(header) -> AWAITING_HEADER

    ``parse`` consumes complete messages from the front of a caller-owned
    bytearray. Short input is never an error; it yields None and leaves the
    unconsumed bytes in place.
    """

    def __init__(self, max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE):
        self.max_message_size = max_message_size
        self.state = DecoderState.AWAITING_HEADER
        self._header: Optional[MessageHeader] = None

    @property
    def pending_header(self) -> Optional[MessageHeader]:
        return self._header

    def parse(self, buffer: bytearray) -> Optional[Frame]:
        if self.state is DecoderState.AWAITING_HEADER:
            if len(buffer) < HEADER_SIZE:
                return None
            header = MessageHeader.unpack(buffer)
            if header.message_length > self.max_message_size:
                raise ProtocolParsingError(
                    ParsingReason.UNEXPECTED_VALUE,
                    f"message of {header.message_length} bytes exceeds "
                    f"maximum {self.max_message_size}",
                )
            del buffer[:HEADER_SIZE]
            self._header = header
            self.state = DecoderState.AWAITING_BODY

        header = self._header
        if len(buffer) < header.body_length:
            return None

        body = bytes(buffer[:header.body_length])
        del buffer[:header.body_length]
        self._header = None
        self.state = DecoderState.AWAITING_HEADER

        message = decode_message(header, body)
        logger.debug("Decoded %s request_id=%d response_to=%d length=%d",
                     header.op_code.name, header.request_id, header.response_to,
                     header.message_length)
        return Frame(header, message)

    def parse_all(self, buffer: bytearray) -> list:
        """Drain every complete message currently in the buffer"""
        frames = []
        while True:
            frame = self.parse(buffer)
            if frame is None:
                return frames
            frames.append(frame)
