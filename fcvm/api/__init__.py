# Control API client and its transport
from .client import FirecrackerClient
from .transport import Request, Response, UnixTransport

__all__ = ["FirecrackerClient", "UnixTransport", "Request", "Response"]
