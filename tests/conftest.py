import asyncio
import io
import socket
import threading
import time
from typing import Any, Iterator

import pytest

from syncbridge.connection import Connection
from syncbridge.model import THeaders
from syncbridge.proxy import Proxy
from syncbridge.server import AIOSocketServer, ServerOptions
from syncbridge.utils import logging


class RecordingConnection(Connection):
	"""Records what is written to it, optionally failing on the given body
	chunk."""

	__slots__ = ["writes", "failOn"]

	def __init__(self, failOn: int | None = None) -> None:
		super().__init__()
		self.writes: list[tuple[Any, ...]] = []
		self.failOn: int | None = failOn

	def count(self, kind: str) -> int:
		return sum(1 for _ in self.writes if _[0] == kind)

	@property
	def body(self) -> bytes:
		return b"".join(_[1] for _ in self.writes if _[0] == "body")

	async def writeHeaders(self, status: int, headers: THeaders) -> None:
		self.writes.append(("headers", status, headers))

	async def writeBodyChunk(self, data: bytes) -> None:
		if self.failOn is not None and self.count("body") >= self.failOn:
			raise BrokenPipeError("Client went away")
		self.writes.append(("body", data))

	async def writeRaw(self, data: bytes) -> None:
		self.raw = True
		self.writes.append(("raw", data))

	async def terminate(self, keepAlive: bool) -> None:
		self.keepAlive = keepAlive and not self.raw
		self.closed = not self.keepAlive
		self.writes.append(("terminate", keepAlive))


class ServerThread:
	"""Runs the server on its own loop, in a background thread."""

	def __init__(self, proxy: Proxy, **options: Any) -> None:
		self.proxy = proxy
		self.port: int = freePort()
		self.stopped = threading.Event()
		self.options = ServerOptions(
			host="127.0.0.1",
			port=self.port,
			polling=0.05,
			stopSignals=False,
			workers=8,
			condition=lambda: not self.stopped.is_set(),
		)._replace(**options)
		self.thread = threading.Thread(target=self.run, daemon=True)

	@property
	def url(self) -> str:
		return f"http://127.0.0.1:{self.port}"

	def run(self) -> None:
		asyncio.run(AIOSocketServer.Serve(self.proxy, self.options))

	def start(self) -> "ServerThread":
		self.thread.start()
		# Waits for the server to accept connections
		for _ in range(200):
			try:
				with socket.create_connection(("127.0.0.1", self.port), timeout=0.1):
					return self
			except OSError:
				time.sleep(0.01)
		raise RuntimeError(f"Server did not start on port {self.port}")

	def stop(self) -> None:
		self.stopped.set()
		self.thread.join(timeout=5)


def freePort() -> int:
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
		s.bind(("127.0.0.1", 0))
		return s.getsockname()[1]


@pytest.fixture
def serve() -> Iterator[Any]:
	"""Starts servers for the given proxies, stopped after the test."""
	servers: list[ServerThread] = []

	def start(proxy: Proxy, **options: Any) -> ServerThread:
		server = ServerThread(proxy, **options).start()
		servers.append(server)
		return server

	yield start
	for server in servers:
		server.stop()


@pytest.fixture
def logs() -> Iterator[io.StringIO]:
	"""Captures the log output."""
	output = io.StringIO()
	previous = logging.OUTPUT
	logging.OUTPUT = output
	try:
		yield output
	finally:
		logging.OUTPUT = previous


# EOF
