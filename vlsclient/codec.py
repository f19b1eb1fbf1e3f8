"""JSON-RPC message model and LSP base protocol framing.

Every message on the wire is a header block followed by a JSON body:

    Content-Length: <number of body bytes>\\r\\n
    \\r\\n
    {"jsonrpc": "2.0", ...}

``Content-Length`` is the only header the client needs; any other header
(``Content-Type`` in practice) is accepted and ignored.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, BinaryIO, Dict, Iterator, List, Optional, TypeAlias, Union

from vlsclient.errors import FramingError

JSONRPC_VERSION = "2.0"
CONTENT_ENCODING = "utf-8"
HEADER_ENCODING = "ascii"
DEFAULT_MAX_CONTENT_LENGTH = 10 * 1024 * 1024

# JSON-RPC error codes used when answering server-initiated requests
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestId: TypeAlias = Union[int, str]


@dataclass(frozen=True)
class Request:
    """A message that expects exactly one Response with the same id."""

    id: RequestId
    method: str
    params: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


@dataclass(frozen=True)
class Response:
    """The answer to a Request; carries either a result or an error object."""

    id: Optional[RequestId]
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return payload


@dataclass(frozen=True)
class Notification:
    """A fire-and-forget message without an id."""

    method: str
    params: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


Message: TypeAlias = Union[Request, Response, Notification]


def encode(message: Message) -> bytes:
    """Frame a message for the wire.

    Args:
        message: The message to encode.

    Returns:
        Header and body bytes, ready to be written in one call.

    Raises:
        FramingError: If the message payload is not JSON-serializable.
    """
    try:
        body = json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False).encode(CONTENT_ENCODING)
    except (TypeError, ValueError) as e:
        raise FramingError(f"Message cannot be serialized to JSON: {e}") from e

    header = f"Content-Length: {len(body)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body


def parse_message(payload: Any) -> Message:
    """Classify a decoded JSON object as a Request, Response or Notification.

    Args:
        payload: The decoded JSON body of one frame.

    Returns:
        The corresponding message.

    Raises:
        FramingError: If the payload is not a JSON-RPC message.
    """
    if not isinstance(payload, dict):
        raise FramingError(f"JSON-RPC message must be an object, got {type(payload).__name__}")

    method = payload.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise FramingError(f"Message method must be a string, got {method!r}")
        if "id" in payload:
            return Request(id=payload["id"], method=method, params=payload.get("params"))
        return Notification(method=method, params=payload.get("params"))

    if "id" in payload and ("result" in payload or "error" in payload):
        error = payload.get("error")
        if error is not None and not isinstance(error, dict):
            raise FramingError(f"Response error must be an object, got {error!r}")
        return Response(id=payload["id"], result=payload.get("result"), error=error)

    raise FramingError(f"Not a JSON-RPC request, response or notification: {payload!r}")


def parse_headers(lines: List[bytes], max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH) -> int:
    """Parse a header block and return the declared body length.

    Args:
        lines: Header lines without their line terminators.
        max_content_length: Largest body the client agrees to read.

    Returns:
        The value of the Content-Length header.

    Raises:
        FramingError: If a header is malformed or the length is missing,
            invalid or larger than ``max_content_length``.
    """
    content_length = None

    for raw in lines:
        try:
            line = raw.decode(HEADER_ENCODING)
        except UnicodeDecodeError as e:
            raise FramingError(f"Header contains non-ASCII characters: {e}") from e

        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise FramingError(f"Malformed header line: {line!r}")

        if name.strip().lower() == "content-length":
            try:
                content_length = int(value.strip())
            except ValueError as e:
                raise FramingError(f"Invalid Content-Length value: {value.strip()!r}") from e

    if content_length is None:
        raise FramingError("Missing required Content-Length header")
    if content_length < 0:
        raise FramingError(f"Negative Content-Length: {content_length}")
    if content_length > max_content_length:
        raise FramingError(f"Message size {content_length} exceeds maximum {max_content_length}")

    return content_length


def parse_body(body: bytes) -> Message:
    """Decode one frame body into a message."""
    try:
        payload = json.loads(body.decode(CONTENT_ENCODING))
    except UnicodeDecodeError as e:
        raise FramingError(f"Invalid UTF-8 in message body: {e}") from e
    except json.JSONDecodeError as e:
        raise FramingError(f"Invalid JSON in message body: {e}") from e

    return parse_message(payload)


def decode(stream: BinaryIO, max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH) -> Iterator[Message]:
    """Lazily decode messages from a blocking binary stream.

    The generator ends when the stream reaches EOF on a message boundary. It
    cannot be restarted: bytes consumed by it are gone.

    Args:
        stream: A binary file-like object supporting ``readline`` and ``read``.
        max_content_length: Largest body the client agrees to read.

    Yields:
        Messages in stream order.

    Raises:
        FramingError: If the stream is malformed or ends mid-message.
    """
    while True:
        lines: List[bytes] = []
        while True:
            line = stream.readline()
            if not line:
                if lines:
                    raise FramingError("Unexpected EOF while reading headers")
                return
            line = line.rstrip(b"\r\n")
            if not line:
                if lines:
                    break
                # Tolerate stray blank lines between frames
                continue
            lines.append(line)

        content_length = parse_headers(lines, max_content_length)
        body = stream.read(content_length)
        if len(body) < content_length:
            raise FramingError(f"Incomplete message body: expected {content_length} bytes, got {len(body)}")

        yield parse_body(body)


async def read_message(
    reader: asyncio.StreamReader, max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
) -> Optional[Message]:
    """Read one message from an asyncio stream.

    Args:
        reader: The stream connected to the server's standard output.
        max_content_length: Largest body the client agrees to read.

    Returns:
        The next message, or None on a clean EOF between messages.

    Raises:
        FramingError: If the stream is malformed or ends mid-message.
    """
    lines: List[bytes] = []
    while True:
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            if not lines and not e.partial.strip():
                return None
            raise FramingError("Unexpected EOF while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise FramingError(f"Header line too long: {e}") from e

        line = line.rstrip(b"\r\n")
        if not line:
            if lines:
                break
            continue
        lines.append(line)

    content_length = parse_headers(lines, max_content_length)
    try:
        body = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Incomplete message body: expected {content_length} bytes, got {len(e.partial)}"
        ) from e

    return parse_body(body)


async def decode_stream(
    reader: asyncio.StreamReader, max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
) -> AsyncIterator[Message]:
    """Asynchronous counterpart of :func:`decode`."""
    while True:
        message = await read_message(reader, max_content_length)
        if message is None:
            return
        yield message
