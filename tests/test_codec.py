"""Tests for the transport codec."""

import asyncio
import io

import pytest

from vlsclient.codec import (
    Notification,
    Request,
    Response,
    decode,
    decode_stream,
    encode,
    parse_message,
    read_message,
)
from vlsclient.errors import FramingError


def frame(body: bytes, header: bytes = b"") -> bytes:
    return header + b"Content-Length: " + str(len(body)).encode() + b"\r\n\r\n" + body


def make_reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestEncode:
    def test_content_length_counts_bytes(self):
        data = encode(Notification("window/logMessage", {"message": "héllo"}))
        header, body = data.split(b"\r\n\r\n", 1)
        assert header == f"Content-Length: {len(body)}".encode()
        assert len(body) == len(body.decode("utf-8")) + 1

    def test_request_without_params_omits_member(self):
        data = encode(Request(1, "shutdown"))
        assert b'"params"' not in data
        assert b'"jsonrpc":"2.0"' in data

    def test_response_carries_result_or_error(self):
        assert b'"result":null' in encode(Response(1))
        error = encode(Response(2, error={"code": -32601, "message": "nope"}))
        assert b'"error"' in error and b'"result"' not in error

    def test_unserializable_params_raise(self):
        with pytest.raises(FramingError, match="cannot be serialized"):
            encode(Notification("test", {"value": object()}))


class TestParseMessage:
    def test_classifies_by_kind(self):
        assert parse_message({"jsonrpc": "2.0", "id": 1, "method": "a"}) == Request(1, "a")
        assert parse_message({"jsonrpc": "2.0", "method": "b", "params": [1]}) == Notification("b", [1])
        assert parse_message({"jsonrpc": "2.0", "id": "x", "result": 3}) == Response("x", result=3)

    def test_error_response_with_null_id(self):
        message = parse_message({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "parse"}})
        assert message == Response(None, error={"code": -32700, "message": "parse"})

    @pytest.mark.parametrize("payload", [[1, 2], {"jsonrpc": "2.0", "id": 1}, {"method": 5}])
    def test_rejects_non_messages(self, payload):
        with pytest.raises(FramingError):
            parse_message(payload)


class TestDecode:
    def test_round_trip_of_mixed_stream(self):
        messages = [
            Request(1, "initialize", {"rootUri": "file:///w", "capabilities": {}}),
            Response(1, result={"capabilities": {"textDocumentSync": 1}}),
            Response(7, error={"code": -32601, "message": "Unhandled method"}),
            Notification("exit"),
            Notification("textDocument/didOpen", {"textDocument": {"text": "ünïcode\r\n"}}),
        ]
        stream = io.BytesIO(b"".join(encode(m) for m in messages))
        assert list(decode(stream)) == messages

    def test_generator_is_lazy(self):
        stream = io.BytesIO(encode(Notification("a")) + b"Content-Length: nope\r\n\r\n")
        messages = decode(stream)
        assert next(messages) == Notification("a")
        with pytest.raises(FramingError, match="Invalid Content-Length"):
            next(messages)

    def test_extra_headers_and_bare_newlines(self):
        body = b'{"jsonrpc":"2.0","method":"a"}'
        data = b"content-length: %d\nContent-Type: application/vscode-jsonrpc; charset=utf-8\n\n%s" % (
            len(body), body)
        assert list(decode(io.BytesIO(data))) == [Notification("a")]

    def test_truncated_body(self):
        data = frame(b'{"jsonrpc":"2.0","method":"a"}')[:-3]
        with pytest.raises(FramingError, match="Incomplete message body"):
            list(decode(io.BytesIO(data)))

    def test_eof_inside_headers(self):
        with pytest.raises(FramingError, match="EOF while reading headers"):
            list(decode(io.BytesIO(b"Content-Length: 10\r\n")))

    def test_oversized_frame(self):
        with pytest.raises(FramingError, match="exceeds maximum"):
            list(decode(io.BytesIO(b"Content-Length: 2048\r\n\r\n"), max_content_length=1024))

    @pytest.mark.parametrize("header, match", [
        (b"Content-Type: application/json\r\n\r\n", "Missing required Content-Length"),
        (b"Content-Length: -1\r\n\r\n", "Negative Content-Length"),
        (b"Content-Length 12\r\n\r\n", "Malformed header"),
    ])
    def test_bad_headers(self, header, match):
        with pytest.raises(FramingError, match=match):
            list(decode(io.BytesIO(header)))

    def test_invalid_json_body(self):
        with pytest.raises(FramingError, match="Invalid JSON"):
            list(decode(io.BytesIO(frame(b"{not json"))))


class TestAsyncDecode:
    @pytest.mark.asyncio
    async def test_partial_reads_never_split_messages(self):
        first = Request(1, "test/echo", {"text": "a" * 100})
        second = Notification("test/event", {"n": 2})
        data = encode(first) + encode(second)

        reader = asyncio.StreamReader()

        async def feed():
            for i in range(len(data)):
                reader.feed_data(data[i:i + 1])
                await asyncio.sleep(0)
            reader.feed_eof()

        feeder = asyncio.create_task(feed())
        received = [message async for message in decode_stream(reader)]
        await feeder

        assert received == [first, second]

    @pytest.mark.asyncio
    async def test_merged_frames_in_one_chunk(self):
        reader = make_reader(encode(Notification("a")) + encode(Notification("b")))
        assert await read_message(reader) == Notification("a")
        assert await read_message(reader) == Notification("b")
        assert await read_message(reader) is None

    @pytest.mark.asyncio
    async def test_clean_eof_ends_stream(self):
        reader = make_reader(b"")
        assert [message async for message in decode_stream(reader)] == []

    @pytest.mark.asyncio
    async def test_eof_mid_body(self):
        reader = make_reader(b"Content-Length: 50\r\n\r\n{}")
        with pytest.raises(FramingError, match="expected 50 bytes, got 2"):
            await read_message(reader)

    @pytest.mark.asyncio
    async def test_body_must_be_an_object(self):
        reader = make_reader(frame(b"[1, 2, 3]"))
        with pytest.raises(FramingError, match="must be an object"):
            await read_message(reader)
