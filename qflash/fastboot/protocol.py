"""Client side of the fastboot command/response protocol."""

from __future__ import annotations

import abc
import re
import sys
from typing import BinaryIO, Iterator, Union

__all__ = [
    "FB_COMMAND_SZ",
    "FB_RESPONSE_SZ",
    "FastbootError",
    "Transport",
    "FastbootProtocol",
]

FB_COMMAND_SZ = 64
FB_RESPONSE_SZ = 64

_CHUNK_SIZE = 16 * 1024
_HEX_PREFIX = re.compile(r"[ \t\n\r\v\f]*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)")

Payload = Union[bytes, bytearray, memoryview, BinaryIO]


class FastbootError(RuntimeError):
    """A fastboot exchange failed; the message says why."""


class Transport(abc.ABC):
    """A bulk pipe to a device in fastboot mode."""

    @abc.abstractmethod
    def read(self, length: int) -> bytes:
        """Read up to ``length`` bytes; raise OSError on failure."""

    @abc.abstractmethod
    def write(self, data: bytes) -> int:
        """Write ``data`` and return the number of bytes sent."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the underlying device."""


def _parse_hex(text: str) -> int:
    match = _HEX_PREFIX.match(text)
    if match is None or not match.group(2):
        return 0
    value = int(match.group(2), 16)
    if match.group(1) == "-":
        value = -value & 0xFFFFFFFFFFFFFFFF
    return value


def _reason(exc: OSError) -> str:
    return exc.strerror or str(exc)


class FastbootProtocol:
    """Sends fastboot commands and interprets the device's status replies."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self.last_error = ""

    def _fail(self, message: str, close: bool = False) -> FastbootError:
        self.last_error = message
        if close:
            self._transport.close()
        return FastbootError(message)

    def _check_response(self, size: int, data_okay: bool) -> str | int:
        while True:
            try:
                raw = self._transport.read(FB_RESPONSE_SZ)
            except OSError as exc:
                raise self._fail(f"status read failed ({_reason(exc)})", close=True) from exc
            if len(raw) < 4:
                raise self._fail(f"status malformed ({len(raw)} bytes)", close=True)
            tag = raw[:4]
            body = raw[4:].split(b"\0", 1)[0].decode("latin-1")
            if tag == b"INFO":
                print(f"(bootloader) {body}", file=sys.stderr)
                continue
            if tag == b"OKAY":
                return body
            if tag == b"FAIL":
                raise self._fail(f"remote: {body}" if len(raw) > 4 else "remote failure")
            if tag == b"DATA" and data_okay:
                dsize = _parse_hex(body)
                if dsize > size:
                    raise self._fail("data size too large", close=True)
                return dsize
            raise self._fail("unknown status code", close=True)

    def _send_command_bytes(self, cmd: str) -> None:
        raw = cmd.encode("latin-1")
        if len(raw) > FB_COMMAND_SZ:
            raise self._fail("command too large")
        try:
            written = self._transport.write(raw)
        except OSError as exc:
            raise self._fail(f"command write failed ({_reason(exc)})", close=True) from exc
        if written != len(raw):
            raise self._fail("command write failed (short write)", close=True)

    @staticmethod
    def _chunks(data: Payload, size: int) -> Iterator[bytes]:
        if isinstance(data, (bytes, bytearray, memoryview)):
            yield bytes(data[:size])
            return
        left = size
        while left > 0:
            chunk = data.read(min(left, _CHUNK_SIZE))
            if not chunk:
                return
            left -= len(chunk)
            yield chunk

    def _write_payload(self, data: Payload, size: int) -> None:
        sent = 0
        try:
            for chunk in self._chunks(data, size):
                sent += self._transport.write(chunk)
        except OSError as exc:
            raise self._fail(f"data transfer failure ({_reason(exc)})", close=True) from exc
        if sent != size:
            raise self._fail("data transfer failure (short transfer)", close=True)

    def command(self, cmd: str) -> None:
        """Send a command and wait for OKAY."""
        self._send_command_bytes(cmd)
        self._check_response(0, False)

    def command_response(self, cmd: str) -> str:
        """Send a command and return the text that follows OKAY."""
        self._send_command_bytes(cmd)
        result = self._check_response(0, False)
        assert isinstance(result, str)
        return result

    def download_data(self, data: Payload, size: int | None = None) -> None:
        """Send ``size`` bytes from a buffer or binary file to the device."""
        if size is None:
            if not isinstance(data, (bytes, bytearray, memoryview)):
                raise ValueError("size is required when data is a file")
            size = len(data)
        self._send_command_bytes(f"download:{size:08x}")
        accepted = self._check_response(size, True)
        assert isinstance(accepted, int)
        if accepted:
            self._write_payload(data, accepted)
        self._check_response(0, False)