#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error taxonomy for the fcvm SDK.
Validation, spawn, transport, protocol and lifecycle failures each have their own class.
"""
import dataclasses
import enum
from http import HTTPStatus
from typing import Any, Dict, List, Optional


class FcvmError(Exception):
    """Base class for every SDK error."""


@dataclasses.dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(FcvmError):
    """Rejected VmSpec. No process or file has been touched."""

    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors) or "invalid spec")


class SpawnError(FcvmError):
    """The hypervisor process could not be started or never exposed its socket."""


class TransportError(FcvmError):
    """Base class for control-channel failures."""


class ConnectFailure(str, enum.Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"


class ConnectError(TransportError):
    def __init__(self, path: str, reason: ConnectFailure, detail: str = ""):
        self.path = path
        self.reason = reason
        super().__init__(f"connect to {path} failed ({reason.value}){': ' + detail if detail else ''}")


class Disconnected(TransportError):
    """The connection is gone. Sticky: every later call on the same transport fails the same way."""


class TransportTimeout(TransportError):
    pass


class MalformedResponse(TransportError):
    pass


class FaultClass(str, enum.Enum):
    CLIENT = "ClientFault"
    SERVER = "ServerFault"


class ApiError(FcvmError):
    """Non-success response from the hypervisor API."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        method: str = "",
        path: str = "",
    ):
        self.status = status
        self.fault_class = FaultClass.SERVER if status >= 500 else FaultClass.CLIENT
        self.code = code
        self.message = message
        self.method = method
        self.path = path
        super().__init__(f"{method} {path} -> {status} {code}: {message}".strip())

    @classmethod
    def from_response(cls, status: int, body: Optional[Dict[str, Any]], method: str, path: str) -> "ApiError":
        body = body if isinstance(body, dict) else {}
        message = str(body.get("fault_message") or "")
        code = body.get("fault_code") or status_code_name(status)
        return cls(status, str(code), message, method=method, path=path)


class AlreadyBooted(ApiError):
    """InstanceStart issued on a VM that has already been started."""

    def __init__(self, message: str = "microVM already started", method: str = "PUT", path: str = "/actions"):
        super().__init__(HTTPStatus.BAD_REQUEST.value, "AlreadyBooted", message, method=method, path=path)


class InvalidTransition(FcvmError):
    def __init__(self, state: Any, operation: str):
        self.state = state
        self.operation = operation
        name = getattr(state, "value", state)
        super().__init__(f"cannot {operation} from state {name}")


class OperationTimeout(FcvmError):
    """A caller-supplied deadline expired; the handle has been failed and torn down."""


class CleanupError(FcvmError):
    """Best-effort teardown failure. Logged, never raised to the caller."""


def status_code_name(status: int) -> str:
    """CamelCase reason phrase for an HTTP status, e.g. 400 -> BadRequest."""
    try:
        phrase = HTTPStatus(status).phrase
    except ValueError:
        return f"Http{status}"
    return "".join(word[:1].upper() + word[1:] for word in phrase.replace("-", " ").split())
