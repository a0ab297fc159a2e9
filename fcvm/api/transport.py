#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Control-channel transport for the fcvm SDK.
HTTP/1.1 over a UNIX domain socket, one outstanding request per connection.
A connection never reconnects on its own: once it is lost every call fails with
Disconnected until the caller builds a new transport.
"""
import dataclasses
import logging
import socket
import threading
import time
from typing import Dict, Optional

from fcvm.errors import ConnectError, ConnectFailure, Disconnected, MalformedResponse, TransportTimeout

logger = logging.getLogger("fcvm")

HEADER_END = b"\r\n\r\n"
MAX_HEADER_BYTES = 64 * 1024
RECV_CHUNK = 65536


@dataclasses.dataclass
class Request:
    method: str
    path: str
    body: Optional[bytes] = None

    def encode(self) -> bytes:
        head = f"{self.method} {self.path} HTTP/1.1\r\nHost: localhost\r\nAccept: application/json\r\n"
        body = self.body
        if body is None and self.method in ("PUT", "PATCH"):
            body = b""
        if body is not None:
            head += f"Content-Type: application/json\r\nContent-Length: {len(body)}\r\n"
        return (head + "\r\n").encode("ascii") + (body or b"")


@dataclasses.dataclass
class Response:
    status: int
    reason: str
    headers: Dict[str, str]
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class UnixTransport:
    """Synchronous request/response client over a single UNIX socket connection."""

    def __init__(self, sock: socket.socket, path: str, timeout: float = 10.0):
        self.path = path
        self.timeout = timeout
        self._sock = sock
        self._buf = bytearray()
        self._lock = threading.Lock()
        self._broken: Optional[str] = None
        self._closed = False

    @classmethod
    def connect(cls, path: str, timeout: float = 5.0, request_timeout: float = 10.0) -> "UnixTransport":
        """Open a connection to `path`. Raises ConnectError (timeout|refused)."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(str(path))
        except socket.timeout as e:
            sock.close()
            raise ConnectError(str(path), ConnectFailure.TIMEOUT, str(e)) from e
        except OSError as e:
            sock.close()
            raise ConnectError(str(path), ConnectFailure.REFUSED, str(e)) from e
        logger.debug("connected to %s", path)
        return cls(sock, str(path), timeout=request_timeout)

    @property
    def closed(self) -> bool:
        return self._broken is not None

    def send(self, request: Request, timeout: Optional[float] = None) -> Response:
        """Send one request and return its complete response."""
        with self._lock:
            if self._broken is not None:
                raise Disconnected(f"connection to {self.path} is closed: {self._broken}")
            deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
            try:
                self._sock.settimeout(max(deadline - time.monotonic(), 0.001))
                self._sock.sendall(request.encode())
                response = self._read_response(deadline)
            except socket.timeout as e:
                self._mark_broken("request timed out")
                raise TransportTimeout(f"{request.method} {request.path} timed out") from e
            except MalformedResponse as e:
                self._mark_broken(f"malformed response: {e}")
                raise
            except Disconnected:
                raise
            except OSError as e:
                self._mark_broken(str(e))
                raise Disconnected(f"connection to {self.path} lost: {self._broken}") from e
            if response.headers.get("connection", "").lower() == "close":
                self._mark_broken("server closed the connection")
            logger.debug("%s %s -> %d", request.method, request.path, response.status)
            return response

    def abort(self, reason: str) -> None:
        """Fail the in-flight call (if any) and every later one with Disconnected."""
        self._mark_broken(reason)
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self) -> None:
        if self._closed:
            return
        self.abort("transport closed")
        with self._lock:
            if not self._closed:
                self._sock.close()
                self._closed = True

    def _mark_broken(self, reason: str) -> None:
        if self._broken is None:
            self._broken = reason

    def _recv(self, deadline: float) -> bytes:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("deadline exceeded")
        self._sock.settimeout(remaining)
        chunk = self._sock.recv(RECV_CHUNK)
        if not chunk:
            self._mark_broken("connection closed by peer")
            raise Disconnected(f"connection to {self.path} closed by peer")
        return chunk

    def _read_response(self, deadline: float) -> Response:
        while HEADER_END not in self._buf:
            if len(self._buf) > MAX_HEADER_BYTES:
                raise MalformedResponse("response headers too large")
            self._buf += self._recv(deadline)
        idx = self._buf.index(HEADER_END)
        head = bytes(self._buf[:idx]).decode("iso-8859-1")
        del self._buf[: idx + len(HEADER_END)]

        lines = head.split("\r\n")
        parts = lines[0].split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            raise MalformedResponse(f"bad status line {lines[0]!r}")
        try:
            status = int(parts[1])
        except ValueError as e:
            raise MalformedResponse(f"bad status code {parts[1]!r}") from e
        reason = parts[2] if len(parts) > 2 else ""
        headers: Dict[str, str] = {}
        for line in lines[1:]:
            name, sep, value = line.partition(":")
            if not sep:
                raise MalformedResponse(f"bad header line {line!r}")
            headers[name.strip().lower()] = value.strip()

        if headers.get("transfer-encoding", "").lower() == "chunked":
            body = self._read_chunked(deadline)
        else:
            try:
                length = int(headers.get("content-length", "0"))
            except ValueError as e:
                raise MalformedResponse(f"bad content-length {headers.get('content-length')!r}") from e
            if length < 0:
                raise MalformedResponse(f"negative content-length {length}")
            body = self._read_exact(length, deadline)
        return Response(status=status, reason=reason, headers=headers, body=body)

    def _read_exact(self, length: int, deadline: float) -> bytes:
        while len(self._buf) < length:
            self._buf += self._recv(deadline)
        data = bytes(self._buf[:length])
        del self._buf[:length]
        return data

    def _read_line(self, deadline: float) -> bytes:
        while b"\r\n" not in self._buf:
            if len(self._buf) > MAX_HEADER_BYTES:
                raise MalformedResponse("chunk header too large")
            self._buf += self._recv(deadline)
        idx = self._buf.index(b"\r\n")
        line = bytes(self._buf[:idx])
        del self._buf[: idx + 2]
        return line

    def _read_chunked(self, deadline: float) -> bytes:
        body = bytearray()
        while True:
            size_line = self._read_line(deadline).split(b";", 1)[0].strip()
            try:
                size = int(size_line, 16)
            except ValueError as e:
                raise MalformedResponse(f"bad chunk size {size_line!r}") from e
            if size == 0:
                # trailers end with an empty line
                while self._read_line(deadline):
                    pass
                return bytes(body)
            body += self._read_exact(size, deadline)
            if self._read_exact(2, deadline) != b"\r\n":
                raise MalformedResponse("missing chunk terminator")
