import asyncio
import time
from concurrent.futures import Executor
from typing import Any

from . import config
from .connection import Connection
from .model import ProducedResponse, TBody, TEnviron, THeaders, header
from .utils.io import asBytes
from .utils.logging import debug, exception, info, logged

# Written as-is when sending a response fails midway. The client can't make
# sense of the partial response, and seeing the connection drop is what tells
# it that the request failed.
ERROR_LINE: bytes = b"HTTP/1.1 500 Internal Server Error\r\n\r\n"

END = object()


def keepAlive(environ: TEnviron) -> bool:
	"""Tells if the connection should be kept open after the response."""
	version: str = environ.get("SERVER_PROTOCOL", "")
	tokens: set[str] = {
		_.strip().lower() for _ in str(environ.get("HTTP_CONNECTION", "")).split(",")
	}
	if version == "HTTP/1.1":
		# HTTP 1.1: all requests are persistent requests, client must
		# send a "Connection: close" header to indicate otherwise
		return "close" not in tokens
	elif version == "HTTP/1.0":
		# HTTP 1.0: all requests are non keep-alive, client must
		# send a "Connection: Keep-Alive" to indicate otherwise
		return "keep-alive" in tokens
	else:
		return False


def commonLog(environ: TEnviron, status: int, headers: THeaders) -> str:
	"""Formats the response the way Rack's `CommonLogger` does."""
	length: str | None = header(headers, "Content-Length")
	start: float | None = environ.get("syncbridge.start")
	query: str = environ.get("QUERY_STRING") or ""
	return (
		f"{environ.get('HTTP_X_FORWARDED_FOR') or environ.get('REMOTE_ADDR') or '-'}"
		f" - {environ.get('REMOTE_USER') or '-'}"
		f" [{time.strftime('%d/%b/%Y:%H:%M:%S %z')}]"
		f' "{environ.get("REQUEST_METHOD", "-")} {environ.get("PATH_INFO", "")}{f"?{query}" if query else ""} {environ.get("SERVER_PROTOCOL", "-")}"'
		f" {status} {length if length and length != '0' else '-'}"
		f" {time.time() - start if start else 0.0:0.4f}"
	)


class ResponseStreamer:
	"""Writes produced responses to connections, one body item at a time.
	Body items are pulled on `executor` as producing them may block."""

	__slots__ = ["executor", "logRequests"]

	def __init__(
		self, executor: Executor | None = None, *, logRequests: bool = config.LOG_REQUESTS
	) -> None:
		self.executor: Executor | None = executor
		self.logRequests: bool = logRequests

	async def send(
		self, response: ProducedResponse, connection: Connection, environ: TEnviron
	) -> bool:
		"""Sends the response, returning `False` when it could not be fully
		sent, in which case the connection is closed."""
		loop = asyncio.get_running_loop()
		status, headers, body = response
		sent: bool = False
		count: int = 0
		try:
			await connection.ready()
			await connection.writeHeaders(status, headers)
			iterator = iter(body)
			while True:
				chunk: Any = await loop.run_in_executor(
					self.executor, next, iterator, END
				)
				if chunk is END:
					break
				await connection.writeBodyChunk(asBytes(chunk))
				count += 1
			await connection.terminate(keepAlive(environ))
			sent = True
		except Exception as e:
			exception(e, "Sending response failed")
			await self.abort(connection)
		finally:
			await self.close(body, loop)
			logged(debug) and debug("Response body streamed", Chunks=count, Sent=sent)
			if self.logRequests:
				info(commonLog(environ, status, headers), origin="access")
		return sent

	async def abort(self, connection: Connection) -> None:
		try:
			await connection.writeRaw(ERROR_LINE)
		except OSError as e:
			# The client is most likely gone already
			logged(debug) and debug("Could not write error line", Error=str(e))
		finally:
			await connection.terminate(False)

	async def close(self, body: TBody, loop: asyncio.AbstractEventLoop) -> None:
		"""Closes the body once it's been sent, it may hold resources (like
		files) needed up until then."""
		close = getattr(body, "close", None)
		if close is None:
			return
		try:
			await loop.run_in_executor(self.executor, close)
		except Exception as e:
			exception(e, "Closing response body failed")


# EOF
