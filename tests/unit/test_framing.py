"""
Unit Tests for the streaming message decoder

The decoder must produce each message exactly once however the byte stream
is fragmented, and must report "need more data" rather than failing on
short input.
"""

import random

import pytest

from mongowire.documents import to_dict
from mongowire.errors import ParsingReason, ProtocolParsingError
from mongowire.framing import DecoderState, MessageDecoder
from mongowire.wire import HEADER_SIZE, OpMessage, OpReply, ReplyFlags, encode_message

pytestmark = pytest.mark.unit


def stream_of(count: int) -> bytes:
    return b"".join(
        encode_message(OpMessage.command({"seq": i, "pad": "x" * (i * 7)}), request_id=i + 1)
        for i in range(count)
    )


class TestMessageDecoder:

    def setup_method(self):
        self.decoder = MessageDecoder()

    def test_partial_header_needs_more_data(self):
        data = encode_message(OpMessage.command({"ping": 1}), request_id=1)
        buffer = bytearray(data[:HEADER_SIZE - 1])

        assert self.decoder.parse(buffer) is None
        assert self.decoder.state is DecoderState.AWAITING_HEADER
        assert len(buffer) == HEADER_SIZE - 1

    def test_header_then_partial_body(self):
        data = encode_message(OpMessage.command({"ping": 1}), request_id=9)
        buffer = bytearray(data[:-1])

        assert self.decoder.parse(buffer) is None
        assert self.decoder.state is DecoderState.AWAITING_BODY
        assert self.decoder.pending_header.request_id == 9

        buffer += data[-1:]
        frame = self.decoder.parse(buffer)

        assert frame.header.request_id == 9
        assert to_dict(frame.message.body) == {"ping": 1}
        assert self.decoder.state is DecoderState.AWAITING_HEADER
        assert buffer == bytearray()

    def test_byte_at_a_time(self):
        """A stream fed one byte per read yields every message exactly once, in order"""
        data = stream_of(3)
        buffer = bytearray()
        frames = []

        for byte in data:
            buffer.append(byte)
            frame = self.decoder.parse(buffer)
            if frame is not None:
                frames.append(frame)

        assert [f.header.request_id for f in frames] == [1, 2, 3]
        assert [to_dict(f.message.body)["seq"] for f in frames] == [0, 1, 2]
        assert not buffer

    def test_random_fragmentation(self):
        data = stream_of(20)
        rng = random.Random(1234)
        buffer = bytearray()
        frames = []

        position = 0
        while position < len(data):
            step = rng.randint(1, 97)
            buffer += data[position:position + step]
            position += step
            frames.extend(self.decoder.parse_all(buffer))

        assert [f.header.request_id for f in frames] == list(range(1, 21))

    def test_several_messages_in_one_read(self):
        reply = encode_message(OpReply(ReplyFlags.NONE, 0, 0, ({"ok": 1},)), request_id=5, response_to=1)
        buffer = bytearray(stream_of(2) + reply + b"\x10\x00")

        frames = self.decoder.parse_all(buffer)

        assert len(frames) == 3
        assert frames[2].header.response_to == 1
        assert buffer == bytearray(b"\x10\x00")

    def test_message_larger_than_limit_rejected(self):
        decoder = MessageDecoder(max_message_size=64)
        buffer = bytearray(encode_message(OpMessage.command({"pad": "y" * 100}), request_id=1))

        with pytest.raises(ProtocolParsingError) as exc_info:
            decoder.parse(buffer)

        assert exc_info.value.reason is ParsingReason.UNEXPECTED_VALUE

    def test_corrupt_body_surfaces_parse_error(self):
        data = bytearray(encode_message(OpMessage.command({"ping": 1}), request_id=1))
        data[HEADER_SIZE + 4] = 0x09  # section kind

        with pytest.raises(ProtocolParsingError):
            self.decoder.parse(data)
