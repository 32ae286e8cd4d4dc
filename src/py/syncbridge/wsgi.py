from itertools import chain
from types import TracebackType
from typing import Any, Callable, Iterable, Iterator

from mypy_extensions import DefaultArg

from .model import ProducedResponse, TEnviron

# --
# ## WSGI
#
# Handlers return `(status, headers, body)`, WSGI applications call
# `start_response` instead. `WSGIHandler` wraps an application so that it
# can be registered as a handler.

TExcInfo = tuple[type[BaseException], BaseException, TracebackType | None]
TWrite = Callable[[bytes], None]
TStartResponse = Callable[
	[str, list[tuple[str, str]], DefaultArg(TExcInfo | None, "exc_info")],  # noqa: F821
	TWrite,
]
TApplication = Callable[[TEnviron, TStartResponse], Iterable[bytes]]

END = object()


class WSGIBody:
	"""The application's iterable, prefixed with what was produced before
	`start_response` was called. Data passed to `write()` goes out before
	the next item."""

	__slots__ = ["written", "buffered", "rest", "iterable"]

	def __init__(
		self,
		written: list[bytes],
		buffered: list[bytes],
		rest: Iterator[bytes],
		iterable: Iterable[bytes],
	) -> None:
		self.written: list[bytes] = written
		self.buffered: list[bytes] = buffered
		self.rest: Iterator[bytes] = rest
		self.iterable: Iterable[bytes] = iterable

	def __iter__(self) -> Iterator[bytes]:
		for item in chain(self.buffered, self.rest):
			while self.written:
				yield self.written.pop(0)
			yield item
		while self.written:
			yield self.written.pop(0)

	def close(self) -> None:
		close = getattr(self.iterable, "close", None)
		if close:
			close()


class WSGIHandler:
	"""Adapts a WSGI application to the handler interface."""

	__slots__ = ["app"]

	def __init__(self, app: TApplication) -> None:
		self.app: TApplication = app

	def __call__(self, environ: TEnviron) -> ProducedResponse:
		started: list[Any] = []
		written: list[bytes] = []
		# Once we returned, the headers are as good as sent
		committed: list[bool] = []

		def start_response(
			status: str,
			headers: list[tuple[str, str]],
			exc_info: TExcInfo | None = None,
		) -> TWrite:
			if exc_info:
				try:
					if committed:
						raise exc_info[1].with_traceback(exc_info[2])
				finally:
					exc_info = None
			elif started:
				raise RuntimeError("start_response called twice without exc_info")
			started[:] = [status, headers]
			return written.append

		result = self.app(environ, start_response)
		iterator = iter(result)
		buffered: list[bytes] = []
		try:
			# Applications may defer `start_response` until their first item
			while not started:
				item = next(iterator, END)
				if item is END:
					break
				buffered.append(item)
			if not started:
				raise RuntimeError(f"WSGI application did not call start_response: {self.app!r}")
		except BaseException:
			close = getattr(result, "close", None)
			if close:
				close()
			raise
		committed.append(True)
		status, headers = started
		return ProducedResponse.From(
			(status, headers, WSGIBody(written, buffered, iterator, result))
		)

	def __repr__(self) -> str:
		return f"(WSGIHandler {self.app!r})"


# EOF
