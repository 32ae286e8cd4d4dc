import asyncio
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from signal import SIGINT, SIGTERM
from typing import Any, Callable, NamedTuple
from urllib.parse import unquote_to_bytes

import h11

from . import config
from .config import HOST, PORT
from .connection import H11Connection
from .driver import RequestDriver
from .model import TEnviron, THandler
from .proxy import Proxy
from .utils.logging import debug, error, event, exception, info, logged, warning

# --
# ## Server
#
# An asyncio server working on sockets directly. HTTP framing is done by
# `h11`, and each parsed request is handed over to a request driver, which
# receives the body chunks as they arrive.


@dataclass(slots=True)
class ServerState:
	isRunning: bool = True

	def stop(self) -> None:
		info("Server stopping…")
		self.isRunning = False

	def onException(
		self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
	) -> None:
		e = context.get("exception")
		if e:
			exception(e)


class ServerOptions(NamedTuple):
	host: str = HOST
	port: int = PORT
	backlog: int = 10_000
	# This is the polling timeout for accepting new requests. Every second is
	# good
	polling: float = 1.0
	readsize: int = 64_000
	# Idle time after which a kept-alive connection is closed. There is no
	# timeout while a request is being processed.
	keepalive: float = 3_600
	workers: int = config.WORKERS
	# Scheme of the URLs the clients used, `https` when TLS is terminated
	# in front of the server.
	scheme: str = "http"
	# Writes an access log line for each response
	logRequests: bool = config.LOG_REQUESTS
	condition: Callable[[], bool] | None = None
	stopSignals: bool = True


OPTIONS: ServerOptions = ServerOptions()

BAD_REQUEST: bytes = (
	b"HTTP/1.1 400 Bad Request\r\n"
	b"Content-Length: 0\r\n"
	b"Connection: close\r\n"
	b"\r\n"
)


def environ(
	request: h11.Request, client: socket.socket, options: ServerOptions
) -> TEnviron:
	"""Creates the WSGI-style environment for the given request."""
	target: bytes = request.target
	path, _, query = target.partition(b"?")
	try:
		peer = client.getpeername()
	except OSError:
		peer = ("-", 0)
	server_name, server_port = options.host, str(options.port)
	env: TEnviron = {
		"REQUEST_METHOD": request.method.decode("ascii"),
		"SCRIPT_NAME": "",
		"PATH_INFO": unquote_to_bytes(path).decode("latin-1"),
		"QUERY_STRING": query.decode("latin-1"),
		"SERVER_PROTOCOL": f"HTTP/{request.http_version.decode('ascii')}",
		"REMOTE_ADDR": str(peer[0]),
		"REMOTE_PORT": str(peer[1]),
		"wsgi.version": (1, 0),
		"wsgi.url_scheme": options.scheme,
		"wsgi.errors": sys.stderr,
		"wsgi.multithread": True,
		"wsgi.multiprocess": False,
		"wsgi.run_once": False,
		"syncbridge.start": time.time(),
	}
	for name, value in request.headers:
		key: str = name.decode("latin-1").upper().replace("-", "_")
		text: str = value.decode("latin-1")
		if key not in ("CONTENT_TYPE", "CONTENT_LENGTH"):
			key = f"HTTP_{key}"
		# Repeated headers are folded, as CGI does
		env[key] = f"{env[key]},{text}" if key in env else text
	if host := env.get("HTTP_HOST"):
		name, sep, port = host.rpartition(":")
		if sep and port.isdigit():
			server_name, server_port = name, port
		else:
			server_name = host
			server_port = "443" if options.scheme == "https" else "80"
	env["SERVER_NAME"] = server_name
	env["SERVER_PORT"] = server_port
	return env


class AIOSocketServer:
	"""AsyncIO backend using sockets directly."""

	@classmethod
	async def OnConnection(
		cls,
		proxy: Proxy,
		client: socket.socket,
		*,
		loop: asyncio.AbstractEventLoop,
		executor: ThreadPoolExecutor,
		options: ServerOptions,
	) -> None:
		"""Processes the requests coming on the client connection, feeding
		them to request drivers, until the connection is closed or not kept
		alive."""
		buffer = bytearray(options.readsize)
		connection = H11Connection(client, loop)
		driver: RequestDriver | None = None
		# Set once the whole request has been received
		received: bool = False
		req_count: int = 0
		try:
			while not connection.closed:
				if driver and received:
					# The response needs to be fully sent before the next
					# request is read.
					await driver.done
					if not connection.nextCycle():
						break
					driver = None
					received = False
					continue
				# The protocol is replaced when HTTP/1.0 connections are kept
				# alive.
				protocol: h11.Connection = connection.protocol
				atom = protocol.next_event()
				if atom is h11.NEED_DATA:
					if protocol.they_are_waiting_for_100_continue:
						await connection.send(
							h11.InformationalResponse(status_code=100, headers=[])
						)
					idle: bool = driver is None or driver.done.done()
					try:
						n = await asyncio.wait_for(
							loop.sock_recv_into(client, buffer),
							timeout=options.keepalive if idle else None,
						)
					except asyncio.TimeoutError:
						logged(debug) and debug(
							"Client timed out", Requests=req_count, Idle=idle
						)
						break
					except ConnectionError:
						n = 0
					protocol.receive_data(bytes(buffer[:n]) if n else b"")
				elif isinstance(atom, h11.Request):
					req_count += 1
					connection.begin(atom)
					env = environ(atom, client, options)
					logged(debug) and debug(
						"Request", Method=env["REQUEST_METHOD"], Path=env["PATH_INFO"]
					)
					driver = proxy.request(
						env,
						connection,
						loop=loop,
						executor=executor,
						logRequests=options.logRequests,
					)
				elif isinstance(atom, h11.Data):
					if driver:
						driver.onBody(atom.data)
				elif isinstance(atom, h11.EndOfMessage):
					received = True
					if driver:
						driver.onComplete()
				elif atom is h11.PAUSED:
					# Only after a complete request, which is handled above
					if not driver:
						break
					received = True
				elif isinstance(atom, h11.ConnectionClosed):
					break
		except h11.RemoteProtocolError as e:
			warning("Malformed request", Error=str(e), Requests=req_count)
			if driver is None:
				try:
					await connection.writeRaw(BAD_REQUEST)
				except OSError:
					pass
		except Exception as e:
			exception(e)
		finally:
			try:
				if driver and not driver.done.done():
					# Pending reads see the end of the body, the response
					# still goes out if the client is listening.
					driver.onClose()
					await driver.done
			except asyncio.CancelledError:
				if driver:
					driver.abandon()
				raise
			finally:
				client.close()

	@classmethod
	async def Serve(
		cls,
		proxy: Proxy,
		options: ServerOptions = ServerOptions(),
	) -> None:
		"""Main server coroutine."""
		server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
		server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		server.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
		port: int = options.port
		try:
			server.bind((options.host, port))
		except OSError as e:
			warning(f"Could not bind to {options.host}:{port}, trying other ports.")
			bound: bool = False
			for p in range(options.port + 1, options.port + 5):
				try:
					server.bind((options.host, p))
					bound = True
					port = p
					info(f"Found alternate available port: {port}")
					break
				except OSError:
					pass
			if not bound:
				error(
					f"Unable to bind to {options.host}:{options.port}, aborting.",
					"HOSTPORTERR",
				)
				raise e from e
		options = options._replace(port=port)

		# The argument is the backlog of connections that will be accepted before
		# they are refused.
		server.listen(options.backlog)
		# This is what we need to use it with asyncio
		server.setblocking(False)

		tasks: set[asyncio.Task[None]] = set()
		loop = asyncio.get_running_loop()
		# Handlers and blocking response bodies run there
		executor = ThreadPoolExecutor(
			max_workers=options.workers, thread_name_prefix="syncbridge"
		)

		# Manage server state
		state = ServerState()
		# Registers handlers for signals and exception (so that we log them). Note
		# that we'll get a `set_wakeup_fd only works in main thread of the main interpreter`
		# when this is not run out of the main thread.
		if (
			options.stopSignals
			and threading.current_thread() is threading.main_thread()
		):
			loop.add_signal_handler(SIGINT, lambda: state.stop())
			loop.add_signal_handler(SIGTERM, lambda: state.stop())
		loop.set_exception_handler(state.onException)

		info(
			"Proxy server listening",
			Host=options.host,
			Port=port,
			Proxy=repr(proxy),
		)

		try:
			while state.isRunning:
				if options.condition and not options.condition():
					break
				try:
					res = await asyncio.wait_for(
						loop.sock_accept(server), timeout=options.polling or 1.0
					)
					if res is None:
						continue
					else:
						client = res[0]
					client.setblocking(False)
					task = loop.create_task(
						cls.OnConnection(
							proxy, client, loop=loop, executor=executor, options=options
						)
					)
					tasks.add(task)
					task.add_done_callback(tasks.discard)
				except asyncio.TimeoutError:
					continue
				except OSError as e:
					# This can be: [OSError] [Errno 24] Too many open files
					if e.errno == 24:
						# Implement backpressure or wait mechanism here
						await asyncio.sleep(0.1)  # Short delay before retrying
					else:
						exception(e)

		finally:
			server.close()
			for task in tasks:
				task.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)
			executor.shutdown(wait=False, cancel_futures=True)


def run(
	proxy: Proxy | THandler,
	*,
	host: str = HOST,
	port: int = PORT,
	backlog: int = OPTIONS.backlog,
	condition: Callable[[], bool] | None = None,
	polling: float = OPTIONS.polling,
	keepalive: float = OPTIONS.keepalive,
	workers: int = OPTIONS.workers,
	scheme: str = OPTIONS.scheme,
	logRequests: bool = config.LOG_REQUESTS,
) -> None:
	"""High level function to run the server."""
	options = ServerOptions(
		host=host,
		port=port,
		backlog=backlog,
		condition=condition,
		polling=polling,
		keepalive=keepalive,
		workers=workers,
		scheme=scheme,
		logRequests=logRequests,
	)
	app = proxy if isinstance(proxy, Proxy) else Proxy(proxy)
	try:
		asyncio.run(AIOSocketServer.Serve(app, options))
	except KeyboardInterrupt:
		event("ManualShutdown")
	event("EOK")


# EOF
