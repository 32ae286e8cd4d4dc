import asyncio
from concurrent.futures import Executor
from typing import cast

from .connection import Connection
from .coroutine import RequestCoroutine
from .failure import FailureTranslator
from .input import ReplayBuffer
from .model import ProducedResponse, RequestState, TEnviron, THandler
from .streamer import ResponseStreamer
from .utils.logging import debug, exception, logged, warning

SERVER_ERROR: bytes = (
	b"HTTP/1.1 500 Internal Server Error\r\n"
	b"Content-Type: text/plain\r\n"
	b"Content-Length: 21\r\n"
	b"Connection: close\r\n"
	b"\r\n"
	b"Internal Server Error"
)

# Queued to start the coroutine, chunks are `bytes` and `None` is the end
# of the body.
START = object()


class RequestDriver:
	"""Drives one request: feeds the events coming from the connection into
	the request coroutine, one `resume` at a time, and streams the response
	out as soon as the handler produced it."""

	__slots__ = [
		"handler",
		"environ",
		"connection",
		"loop",
		"streamer",
		"translator",
		"coroutine",
		"buffer",
		"rewindable",
		"events",
		"complete",
		"aborted",
		"sending",
		"done",
		"_pump",
	]

	def __init__(
		self,
		handler: THandler,
		environ: TEnviron,
		connection: Connection,
		*,
		rewindable: bool = True,
		loop: asyncio.AbstractEventLoop,
		executor: Executor | None = None,
		streamer: ResponseStreamer | None = None,
		translator: FailureTranslator | None = None,
	) -> None:
		self.handler: THandler = handler
		self.environ: TEnviron = environ
		self.connection: Connection = connection
		self.loop: asyncio.AbstractEventLoop = loop
		self.streamer: ResponseStreamer = streamer or ResponseStreamer(executor)
		self.translator: FailureTranslator = translator or FailureTranslator()
		self.coroutine: RequestCoroutine[ProducedResponse] = RequestCoroutine(
			self.run, loop=loop, executor=executor
		)
		self.buffer: ReplayBuffer = ReplayBuffer(
			self.coroutine.pull, rewindable=rewindable
		)
		self.rewindable: bool = rewindable
		self.events: asyncio.Queue[object] = asyncio.Queue()
		self.complete: bool = False
		self.aborted: bool = False
		self.sending: asyncio.Task[bool] | None = None
		# Resolved with whether the response was fully sent
		self.done: asyncio.Future[bool] = loop.create_future()
		self._pump: asyncio.Task[None] | None = None
		environ["wsgi.input"] = self.buffer
		environ["syncbridge.input"] = self.buffer
		environ["syncbridge.connection"] = connection

	@property
	def state(self) -> RequestState:
		return self.coroutine.state

	def run(self) -> ProducedResponse:
		"""Runs the handler, this is the body of the request coroutine."""
		return self.translator.call(self.handler, self.environ, self.buffer)

	# =========================================================================
	# EVENTS
	# =========================================================================

	def onHeaders(self) -> "RequestDriver":
		"""The request headers were parsed, the handler can start."""
		self.events.put_nowait(START)
		self._pump = self.loop.create_task(self.pump())
		return self

	def onBody(self, chunk: bytes) -> None:
		if chunk and not self.complete:
			self.events.put_nowait(bytes(chunk))

	def onComplete(self) -> None:
		"""The request body was fully received."""
		if self.complete:
			return
		self.complete = True
		self.events.put_nowait(None)
		self.connection.succeed()

	def onClose(self) -> None:
		"""The connection was closed or aborted. Pending reads see the end
		of the body."""
		if not self.complete:
			self.aborted = True
			self.complete = True
			self.events.put_nowait(None)
		# Lets a waiting response go out, writing will fail if the client is
		# gone.
		self.connection.succeed()

	def abandon(self) -> None:
		"""Gives up on the request, unblocking the handler if it waits for
		a chunk."""
		if self._pump and not self._pump.done():
			self._pump.cancel()
		self.coroutine.abandon()
		if not self.done.done():
			self.done.set_result(False)

	# =========================================================================
	# PROCESSING
	# =========================================================================

	async def pump(self) -> None:
		"""Resumes the coroutine with each event, in order. Stops once the
		end of the body has been delivered, as the coroutine can't suspend
		after that."""
		try:
			while True:
				item = await self.events.get()
				chunk = None if item is START else cast(bytes | None, item)
				await self.coroutine.resume(chunk)
				if self.coroutine.isFinished and self.sending is None:
					self.respond()
				if item is None:
					break
		except Exception as e:
			exception(e, "Request driver failed")
			self.coroutine.abandon()
			if self.sending is None:
				self.sending = self.loop.create_task(self.fail())
				self.sending.add_done_callback(self._onSent)

	def respond(self) -> None:
		if self.coroutine.state is RequestState.Completed and self.coroutine.result:
			if not self.complete:
				# We don't wait for the rest of the body, which will be
				# drained and discarded.
				logged(debug) and debug(
					"Responding before request body completion",
					Path=self.environ.get("PATH_INFO"),
				)
				self.connection.markSucceededEarly()
			self.sending = self.loop.create_task(
				self.streamer.send(self.coroutine.result, self.connection, self.environ)
			)
		else:
			if self.coroutine.error:
				exception(self.coroutine.error, "Request coroutine failed")
			else:
				warning("Request coroutine produced no response")
			self.sending = self.loop.create_task(self.fail())
		self.sending.add_done_callback(self._onSent)

	async def fail(self) -> bool:
		try:
			await self.connection.writeRaw(SERVER_ERROR)
		except OSError as e:
			logged(debug) and debug("Could not write server error", Error=str(e))
		finally:
			await self.connection.terminate(False)
		return False

	def _onSent(self, task: "asyncio.Task[bool]") -> None:
		if not self.done.done():
			self.done.set_result(
				not task.cancelled() and task.exception() is None and task.result()
			)

	def __repr__(self) -> str:
		return f"<RequestDriver {self.environ.get('REQUEST_METHOD')} {self.environ.get('PATH_INFO')} {self.state.name}>"


# EOF
