import asyncio
import threading
from concurrent.futures import Executor
from queue import SimpleQueue
from typing import Any, Callable, Generic, TypeVar

from .model import RequestState
from .utils.logging import debug, logged

T = TypeVar("T")

# --
# ## Request coroutine
#
# Handlers are synchronous and may block, so they run on a worker thread.
# The thread only ever suspends in `pull()`, where it waits for the event
# loop to hand over the next body chunk. Seen from the loop, `resume()` runs
# the handler until it either needs another chunk or finishes, which makes
# the whole exchange a coroutine driven one step at a time. All state changes
# are applied on the loop thread.


class RequestCoroutine(Generic[T]):
	"""Runs `function` on `executor`, suspending it whenever it pulls a chunk
	that the loop has not supplied yet."""

	__slots__ = [
		"function",
		"loop",
		"executor",
		"state",
		"result",
		"error",
		"_inbox",
		"_step",
		"_thread",
	]

	def __init__(
		self,
		function: Callable[[], T],
		*,
		loop: asyncio.AbstractEventLoop,
		executor: Executor | None = None,
	) -> None:
		self.function: Callable[[], T] = function
		self.loop: asyncio.AbstractEventLoop = loop
		self.executor: Executor | None = executor
		self.state: RequestState = RequestState.Created
		self.result: T | None = None
		self.error: BaseException | None = None
		self._inbox: SimpleQueue[bytes | None] = SimpleQueue()
		self._step: asyncio.Future[RequestState] | None = None
		self._thread: int | None = None

	@property
	def isFinished(self) -> bool:
		return self.state in (RequestState.Completed, RequestState.Failed)

	async def resume(self, chunk: bytes | None = None) -> RequestState:
		"""Transfers control to the coroutine, passing `chunk` to the pending
		pull (`None` means end of body). Returns the state the coroutine is
		in once it suspends again or finishes."""
		if self.isFinished:
			return self.state
		if self._step is not None:
			raise RuntimeError("Request coroutine is already being resumed")
		step: asyncio.Future[RequestState] = self.loop.create_future()
		self._step = step
		if self.state is RequestState.Created:
			self.state = RequestState.Running
			self.loop.run_in_executor(self.executor, self._main)
		else:
			self.state = RequestState.Running
			self._inbox.put(chunk)
		return await step

	def pull(self) -> bytes | None:
		"""Called from within the coroutine: suspends it until the next
		`resume()`, and returns the chunk given there."""
		if self._thread is not None and threading.get_ident() != self._thread:
			raise RuntimeError("Request coroutine pulled from outside its thread")
		self.loop.call_soon_threadsafe(self._settle, RequestState.AwaitingChunk)
		return self._inbox.get()

	def abandon(self) -> None:
		"""Makes the current or next pull see the end of the body, without
		waiting for the coroutine."""
		if not self.isFinished:
			self._inbox.put(None)

	# =========================================================================
	# HELPERS
	# =========================================================================

	def _main(self) -> None:
		self._thread = threading.get_ident()
		logged(debug) and debug("Request coroutine started", Thread=self._thread)
		try:
			result = self.function()
		except BaseException as e:
			# Forwarded to the loop, which owns the failure
			self.loop.call_soon_threadsafe(self._finish, None, e)
		else:
			self.loop.call_soon_threadsafe(self._finish, result, None)

	def _finish(self, result: Any, error: BaseException | None) -> None:
		self.result = result
		self.error = error
		self._settle(RequestState.Failed if error else RequestState.Completed)

	def _settle(self, state: RequestState) -> None:
		self.state = state
		step, self._step = self._step, None
		if step and not step.done():
			step.set_result(state)

	def __repr__(self) -> str:
		return f"<RequestCoroutine {self.state.name}>"


# EOF
