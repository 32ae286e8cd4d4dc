import socket
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator
from wsgiref.util import request_uri

import requests

from syncbridge import config
from syncbridge.proxy import Proxy
from syncbridge.server import ServerOptions
from syncbridge.streamer import ERROR_LINE
from syncbridge.wsgi import WSGIHandler


def respond(body: bytes, status: int = 200, **headers: str):
	return (
		status,
		{"Content-Type": "text/plain", "Content-Length": str(len(body)), **headers},
		[body],
	)


def upload(size: int, chunk: int = 1_000) -> Iterator[bytes]:
	"""Yields `size` bytes, which makes `requests` send them chunked."""
	for i in range(0, size, chunk):
		yield b"x" * min(chunk, size - i)


def raw(port: int, request: bytes) -> bytes:
	"""Sends the request as-is and reads until the server closes."""
	with socket.create_connection(("127.0.0.1", port), timeout=5) as s:
		s.sendall(request)
		data = bytearray()
		while chunk := s.recv(65_536):
			data += chunk
		return bytes(data)


def echoLength(environ):
	stream = environ["wsgi.input"]
	size: int = 0
	while (data := stream.read(4_096)) is not None:
		size += len(data)
	return respond(b"%d" % size)


def test_streamed_upload(serve):
	server = serve(Proxy(echoLength))
	res = requests.post(f"{server.url}/upload", data=upload(250_000), timeout=5)
	assert res.status_code == 200
	assert res.text == "250000"
	assert res.headers["Server"] == "syncbridge"


def test_upload_with_content_length(serve):
	server = serve(Proxy(echoLength))
	res = requests.put(f"{server.url}/upload", data=b"y" * 100_000, timeout=5)
	assert res.text == "100000"


def test_early_response(serve):
	server = serve(Proxy(lambda environ: respond(b"Not interested", 413)))
	res = requests.post(f"{server.url}/", data=b"z" * 10_000, timeout=5)
	assert res.status_code == 413
	assert res.text == "Not interested"


def test_handler_failure(serve):
	def handler(environ):
		raise ValueError("Unexpected input")

	server = serve(Proxy(handler, production=False))
	res = requests.get(server.url, timeout=5)
	assert res.status_code == 500
	assert res.text == repr(ValueError("Unexpected input"))
	assert res.headers["Content-Length"] == str(len(res.content))


def test_handler_failure_in_production(serve):
	def handler(environ):
		raise ValueError("Secret details")

	server = serve(Proxy(handler, production=True))
	res = requests.get(server.url, timeout=5)
	assert res.status_code == 500
	assert res.text == "An error occurred"
	assert "Secret" not in res.text


def test_streaming_failure_closes_connection(serve):
	def body():
		yield b"first"
		raise OSError("Backing file vanished")

	server = serve(Proxy(lambda environ: (200, {"Content-Type": "text/plain"}, body())))
	data = raw(
		server.port,
		b"GET /download HTTP/1.1\r\nHost: localhost\r\n\r\n",
	)
	assert data.startswith(b"HTTP/1.1 200 OK\r\n")
	assert b"first" in data
	assert data.endswith(ERROR_LINE)


def test_partial_read(serve):
	received: list[bytes] = []

	def handler(environ):
		received.append(environ["wsgi.input"].read(10))
		return respond(b"Thanks")

	server = serve(Proxy(handler))
	res = requests.post(server.url, data=upload(50_000), timeout=5)
	assert res.text == "Thanks"
	assert received == [b"x" * 10]


def test_keep_alive(serve):
	ports: list[str] = []

	def handler(environ):
		ports.append(environ["REMOTE_PORT"])
		return echoLength(environ)

	server = serve(Proxy(handler))
	with requests.Session() as session:
		first = session.post(server.url, data=b"a" * 10, timeout=5)
		second = session.post(server.url, data=upload(20), timeout=5)
		third = session.get(server.url, timeout=5)
	assert [first.text, second.text, third.text] == ["10", "20", "0"]
	assert len(set(ports)) == 1


def test_connection_close(serve):
	server = serve(Proxy(lambda environ: respond(b"bye")))
	data = raw(
		server.port,
		b"GET / HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n",
	)
	assert data.startswith(b"HTTP/1.1 200 OK\r\n")
	assert data.endswith(b"\r\n\r\nbye")


def test_http_1_0(serve):
	server = serve(Proxy(lambda environ: respond(environ["SERVER_PROTOCOL"].encode())))
	data = raw(server.port, b"GET / HTTP/1.0\r\n\r\n")
	assert data.endswith(b"HTTP/1.0")


def test_rewindable_input(serve):
	def handler(environ):
		stream = environ["wsgi.input"]
		head = stream.read(5)
		stream.rewind()
		return respond(head + b"|" + stream.read())

	server = serve(Proxy(handler))
	res = requests.post(server.url, data=b"hello world", timeout=5)
	assert res.text == "hello|hello world"


def test_non_rewindable_input(serve):
	class Forward(Proxy):
		pass

	def handler(environ):
		stream = environ["wsgi.input"]
		head = stream.read(5)
		try:
			stream.rewind()
		except OSError as e:
			return respond(b"%s|%s" % (head, e.__class__.__name__.encode()))
		return respond(b"rewound")

	Forward.Handler(handler).RewindableInput(False)
	server = serve(Forward())
	res = requests.post(server.url, data=b"hello world", timeout=5)
	assert res.text == "hello|SeekUnsupported"


def test_streamed_download(serve):
	closed: list[bool] = []

	class Download:
		def __iter__(self):
			for i in range(10):
				yield b"%d\n" % i

		def close(self):
			closed.append(True)

	server = serve(Proxy(lambda environ: (200, {}, Download())))
	res = requests.get(f"{server.url}/numbers", stream=True, timeout=5)
	lines = list(res.iter_lines())
	assert lines == [b"%d" % i for i in range(10)]
	assert res.headers["Transfer-Encoding"] == "chunked"
	# The body is closed once the response is sent
	for _ in range(100):
		if closed:
			break
		time.sleep(0.01)
	assert closed == [True]


def test_head_has_no_body(serve):
	server = serve(Proxy(lambda environ: respond(b"Not sent")))
	res = requests.head(server.url, timeout=5)
	assert res.status_code == 200
	assert res.headers["Content-Length"] == "8"
	assert res.content == b""


def test_expect_continue(serve):
	server = serve(Proxy(echoLength))
	with socket.create_connection(("127.0.0.1", server.port), timeout=5) as s:
		s.sendall(
			b"POST / HTTP/1.1\r\nHost: localhost\r\nContent-Length: 4\r\n"
			b"Expect: 100-continue\r\n\r\n"
		)
		interim = s.recv(1024)
		assert interim.startswith(b"HTTP/1.1 100 ")
		s.sendall(b"body")
		res = b""
		# Headers and body may come in separate packets
		while not res.endswith(b"\r\n\r\n4") and (chunk := s.recv(1024)):
			res += chunk
	assert res.startswith(b"HTTP/1.1 200 OK\r\n")
	assert res.endswith(b"\r\n\r\n4")


def test_environ(serve):
	seen: dict = {}

	def handler(environ):
		seen.update(environ)
		seen["url"] = request_uri(environ)
		return respond(b"ok")

	server = serve(Proxy(handler), scheme="https")
	requests.get(
		f"{server.url}/some%20path?a=1&b=2",
		headers={"X-Custom": "value", "Content-Type": "text/plain"},
		timeout=5,
	)
	assert seen["REQUEST_METHOD"] == "GET"
	assert seen["PATH_INFO"] == "/some path"
	assert seen["QUERY_STRING"] == "a=1&b=2"
	assert seen["SERVER_PROTOCOL"] == "HTTP/1.1"
	assert seen["SERVER_NAME"] == "127.0.0.1"
	assert seen["SERVER_PORT"] == str(server.port)
	assert seen["CONTENT_TYPE"] == "text/plain"
	assert seen["HTTP_X_CUSTOM"] == "value"
	assert seen["REMOTE_ADDR"] == "127.0.0.1"
	assert seen["wsgi.url_scheme"] == "https"
	assert seen["url"] == f"https://127.0.0.1:{server.port}/some%20path?a=1&b=2"
	assert "async.callback" not in seen
	assert isinstance(seen["syncbridge.start"], float)


def test_wsgi_application(serve):
	def app(environ, start_response):
		body = environ["wsgi.input"].read()
		start_response("201 Created", [("Content-Type", "application/octet-stream")])
		return [b"<", body, b">"]

	server = serve(Proxy(WSGIHandler(app)))
	res = requests.post(server.url, data=b"payload", timeout=5)
	assert res.status_code == 201
	assert res.content == b"<payload>"


def test_malformed_request(serve):
	server = serve(Proxy(lambda environ: respond(b"never")))
	data = raw(server.port, b"NOT HTTP AT ALL\r\n\r\n")
	assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")


def readResponse(s: socket.socket, pending: bytearray) -> tuple[bytes, bytes]:
	"""Reads one response framed by its `Content-Length`, returns its head
	and body. What follows the response is left in `pending`."""
	while b"\r\n\r\n" not in pending and (chunk := s.recv(65_536)):
		pending += chunk
	head, _, rest = bytes(pending).partition(b"\r\n\r\n")
	length = int(
		next(
			line.split(b":", 1)[1]
			for line in head.split(b"\r\n")
			if line.lower().startswith(b"content-length:")
		)
	)
	while len(rest) < length and (chunk := s.recv(65_536)):
		rest += chunk
	pending[:] = rest[length:]
	return head, rest[:length]


def test_http_1_0_keep_alive(serve):
	server = serve(Proxy(lambda environ: respond(environ["PATH_INFO"].encode())))
	with socket.create_connection(("127.0.0.1", server.port), timeout=5) as s:
		pending = bytearray()
		s.sendall(b"GET /first HTTP/1.0\r\nConnection: keep-alive\r\n\r\n")
		head, body = readResponse(s, pending)
		assert head.startswith(b"HTTP/1.1 200 OK\r\n")
		assert b"Connection: keep-alive" in head
		assert body == b"/first"
		s.sendall(b"GET /second HTTP/1.0\r\nConnection: Keep-Alive\r\n\r\n")
		head, body = readResponse(s, pending)
		assert b"Connection: keep-alive" in head
		assert body == b"/second"
		# Without keep-alive, the server closes after the response
		s.sendall(b"GET /last HTTP/1.0\r\n\r\n")
		head, body = readResponse(s, pending)
		assert body == b"/last"
		assert s.recv(1024) == b""


def test_http_1_0_keep_alive_pipelined(serve):
	server = serve(Proxy(echoLength))
	with socket.create_connection(("127.0.0.1", server.port), timeout=5) as s:
		pending = bytearray()
		s.sendall(
			b"POST / HTTP/1.0\r\nConnection: keep-alive\r\nContent-Length: 3\r\n\r\nabc"
			b"POST / HTTP/1.0\r\nConnection: keep-alive\r\nContent-Length: 5\r\n\r\nabcde"
		)
		assert readResponse(s, pending)[1] == b"3"
		assert readResponse(s, pending)[1] == b"5"


def test_http_1_0_keep_alive_needs_length(serve):
	server = serve(Proxy(lambda environ: (200, {}, iter([b"unknown ", b"length"]))))
	data = raw(server.port, b"GET / HTTP/1.0\r\nConnection: keep-alive\r\n\r\n")
	# The body is delimited by the connection closing
	assert b"keep-alive" not in data
	assert data.endswith(b"\r\n\r\nunknown length")


def test_read_returns_at_end_of_body(serve):
	delay: float = 0.1
	returned: list[float] = []

	def handler(environ):
		data = environ["wsgi.input"].read()
		returned.append(time.monotonic())
		return respond(data)

	def chunks() -> Iterator[bytes]:
		for chunk in (b"he", b"llo", b" ", b"world"):
			yield chunk
			time.sleep(delay)
		sent.append(time.monotonic())

	sent: list[float] = []
	server = serve(Proxy(handler))
	res = requests.post(server.url, data=chunks(), timeout=5)
	assert res.text == "hello world"
	assert returned[0] >= sent[0]


def test_concurrent_requests(serve):
	delay: float = 0.3

	def handler(environ):
		data = environ["wsgi.input"].read()

		def body() -> Iterator[bytes]:
			yield b"[" + data
			time.sleep(delay)
			yield b"]"

		return 200, {"Content-Type": "text/plain"}, body()

	def upload(i: int) -> Iterator[bytes]:
		yield b"%d-a" % i
		time.sleep(delay)
		yield b"%d-b" % i

	def call(i: int) -> str:
		return requests.post(server.url, data=upload(i), timeout=10).text

	server = serve(Proxy(handler))
	started = time.monotonic()
	with ThreadPoolExecutor(max_workers=5) as pool:
		results = list(pool.map(call, range(5)))
	elapsed = time.monotonic() - started
	assert results == [f"[{i}-a{i}-b]" for i in range(5)]
	# One request takes two delays, five in sequence would take ten
	assert elapsed < 5 * delay


def test_access_log_option(serve, logs):
	quiet = serve(Proxy(lambda environ: respond(b"ok")), logRequests=False)
	logged = serve(Proxy(lambda environ: respond(b"ok")), logRequests=True)
	requests.get(f"{quiet.url}/quiet", timeout=5)
	requests.get(f"{logged.url}/logged", timeout=5)
	lines: list[str] = []
	# The access log is written once the response is sent
	for _ in range(100):
		lines = [line for line in logs.getvalue().split("\n") if "[access]" in line]
		if lines:
			break
		time.sleep(0.01)
	assert len(lines) == 1
	assert "/logged" in lines[0]


def test_options_follow_configuration():
	options = ServerOptions()
	assert (options.host, options.port) == (config.HOST, config.PORT)
	assert options.logRequests == config.LOG_REQUESTS
	assert options.workers == config.WORKERS


# EOF
