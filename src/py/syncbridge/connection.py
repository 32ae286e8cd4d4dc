import asyncio
import socket
from abc import ABC, abstractmethod
from http import HTTPStatus

import h11

from .config import SERVER_NAME
from .model import THeaders, header, headerItems
from .utils.logging import debug, logged


def reason(status: int) -> str:
	try:
		return HTTPStatus(status).phrase
	except ValueError:
		return "Unknown status"


class Connection(ABC):
	"""The sink responses are written to. One instance lives as long as the
	underlying connection, and is reset for each request cycle."""

	__slots__ = ["succeeded", "early", "raw", "closed", "keepAlive"]

	def __init__(self) -> None:
		self.succeeded: asyncio.Event = asyncio.Event()
		self.early: bool = False
		# Set once raw bytes bypassed the protocol, the connection can't be
		# reused after that.
		self.raw: bool = False
		self.closed: bool = False
		self.keepAlive: bool | None = None

	def reset(self) -> "Connection":
		self.succeeded = asyncio.Event()
		self.early = False
		self.keepAlive = None
		return self

	def succeed(self) -> None:
		"""Notifies that the request has been fully received."""
		self.succeeded.set()

	def markSucceededEarly(self) -> None:
		"""Lets the response go out before the request body has been fully
		received."""
		self.early = True
		self.succeeded.set()

	async def ready(self) -> None:
		await self.succeeded.wait()

	@abstractmethod
	async def writeHeaders(self, status: int, headers: THeaders) -> None: ...

	@abstractmethod
	async def writeBodyChunk(self, data: bytes) -> None: ...

	@abstractmethod
	async def writeRaw(self, data: bytes) -> None:
		"""Writes bytes as-is, bypassing any protocol framing."""

	@abstractmethod
	async def terminate(self, keepAlive: bool) -> None:
		"""Ends the response, closing the connection unless `keepAlive`."""


class H11Connection(Connection):
	"""A connection over a non-blocking socket, framed by `h11`.

	`h11` closes HTTP/1.0 connections after each response. When an HTTP/1.0
	client asks for `Connection: keep-alive` and the response length is known,
	the response is framed here instead, and a fresh `h11.Connection` takes
	over the rest of the socket for the next request."""

	__slots__ = ["client", "loop", "protocol", "method", "server", "legacy", "framed"]

	def __init__(
		self,
		client: socket.socket,
		loop: asyncio.AbstractEventLoop,
		*,
		server: str = SERVER_NAME,
	) -> None:
		super().__init__()
		self.client: socket.socket = client
		self.loop: asyncio.AbstractEventLoop = loop
		self.protocol: h11.Connection = h11.Connection(h11.SERVER)
		self.method: bytes | None = None
		self.server: str = server
		# HTTP/1.0 request asking for keep-alive
		self.legacy: bool = False
		# The response bypasses `h11`
		self.framed: bool = False

	def begin(self, request: h11.Request) -> None:
		"""Called with each request, before the response is written."""
		self.method = request.method
		tokens: set[bytes] = {
			_.strip().lower()
			for name, value in request.headers
			if name.lower() == b"connection"
			for _ in value.split(b",")
		}
		self.legacy = request.http_version == b"1.0" and b"keep-alive" in tokens

	def reset(self) -> "H11Connection":
		super().reset()
		self.method = None
		self.legacy = False
		self.framed = False
		return self

	def nextCycle(self) -> bool:
		"""Prepares the protocol for the next request on the socket, returns
		`False` when the connection can't be reused."""
		if self.closed or not self.keepAlive:
			return False
		if self.framed:
			if self.protocol.their_state not in (h11.DONE, h11.MUST_CLOSE):
				return False
			# Pipelined data was already received by the previous protocol
			data, eof = self.protocol.trailing_data
			self.protocol = h11.Connection(h11.SERVER)
			if data:
				self.protocol.receive_data(bytes(data))
			if eof:
				self.protocol.receive_data(b"")
		elif (
			self.protocol.our_state is h11.DONE
			and self.protocol.their_state is h11.DONE
		):
			self.protocol.start_next_cycle()
		else:
			return False
		self.reset()
		return True

	async def send(self, event: h11.Event) -> None:
		data = self.protocol.send(event)
		if data:
			await self.loop.sock_sendall(self.client, data)

	async def writeHeaders(self, status: int, headers: THeaders) -> None:
		items: list[tuple[str, str]] = headerItems(headers)
		if not any(k.lower() == "server" for k, _ in items):
			items.append(("Server", self.server))
		if self.legacy and self.isFramable(status, items):
			self.framed = True
			items = [_ for _ in items if _[0].lower() != "connection"]
			items.append(("Connection", "keep-alive"))
			head: str = "".join(
				[f"HTTP/1.1 {status} {reason(status)}\r\n"]
				+ [f"{k}: {v}\r\n" for k, v in items]
				+ ["\r\n"]
			)
			await self.loop.sock_sendall(self.client, head.encode("latin-1"))
		else:
			await self.send(
				h11.Response(status_code=status, headers=items, reason=reason(status))
			)

	async def writeBodyChunk(self, data: bytes) -> None:
		# Responses to HEAD requests have no body
		if not data or self.method == b"HEAD":
			return
		elif self.framed:
			await self.loop.sock_sendall(self.client, data)
		else:
			await self.send(h11.Data(data=data))

	async def writeRaw(self, data: bytes) -> None:
		self.raw = True
		await self.loop.sock_sendall(self.client, data)

	async def terminate(self, keepAlive: bool) -> None:
		if self.framed:
			self.keepAlive = keepAlive and not self.raw
		else:
			if not self.raw and self.protocol.our_state is h11.SEND_BODY:
				await self.send(h11.EndOfMessage())
			self.keepAlive = (
				keepAlive and not self.raw and self.protocol.our_state is h11.DONE
			)
		logged(debug) and debug(
			"Response terminated",
			KeepAlive=self.keepAlive,
			Framed=self.framed,
			Client=f"{id(self.client):x}",
		)
		if not self.keepAlive:
			self.shutdown()

	def isFramable(self, status: int, items: list[tuple[str, str]]) -> bool:
		"""Tells if the response length is known without chunked encoding."""
		return (
			status >= 200
			and (
				status in (204, 304)
				or self.method == b"HEAD"
				or header(items, "Content-Length") is not None
			)
		)

	def shutdown(self) -> None:
		"""Shuts the socket down, which also wakes up any pending read on it."""
		if self.closed:
			return
		self.closed = True
		try:
			self.client.shutdown(socket.SHUT_RDWR)
		except OSError:
			# The peer is already gone
			pass


# EOF
