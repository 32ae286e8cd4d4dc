import sys

import pytest

from syncbridge.wsgi import WSGIHandler


class Result:
	"""An application iterable tracking `close()` calls."""

	def __init__(self, items: list[bytes]) -> None:
		self.items = items
		self.closed: int = 0

	def __iter__(self):
		return iter(self.items)

	def close(self) -> None:
		self.closed += 1


def test_simple_application():
	result = Result([b"Hello, ", b"World"])

	def app(environ, start_response):
		start_response("200 OK", [("Content-Type", "text/plain")])
		return result

	status, headers, body = WSGIHandler(app)({})
	assert status == 200
	assert headers == [("Content-Type", "text/plain")]
	assert list(body) == [b"Hello, ", b"World"]
	body.close()
	assert result.closed == 1


def test_deferred_start_response():
	def app(environ, start_response):
		# Generators only call start_response once iterated
		start_response("201 Created", [])
		yield b"first"
		yield b"second"

	status, _, body = WSGIHandler(app)({})
	assert status == 201
	assert list(body) == [b"first", b"second"]


def test_write_callable():
	def app(environ, start_response):
		write = start_response("200 OK", [])
		write(b"written")
		return [b"returned"]

	_, _, body = WSGIHandler(app)({})
	assert list(body) == [b"written", b"returned"]


def test_missing_start_response():
	result = Result([b"no headers"])
	with pytest.raises(RuntimeError):
		WSGIHandler(lambda environ, start_response: result)({})
	assert result.closed == 1


def test_start_response_twice():
	def app(environ, start_response):
		start_response("200 OK", [])
		start_response("500 Internal Server Error", [])
		return []

	with pytest.raises(RuntimeError):
		WSGIHandler(app)({})


def test_error_replaces_headers():
	def app(environ, start_response):
		start_response("200 OK", [("X-Partial", "1")])
		try:
			raise ValueError("Late failure")
		except ValueError:
			start_response("500 Internal Server Error", [], sys.exc_info())
		return [b"failed"]

	status, headers, body = WSGIHandler(app)({})
	assert status == 500
	assert headers == {}
	assert list(body) == [b"failed"]


def test_error_after_headers_are_sent():
	def app(environ, start_response):
		start_response("200 OK", [])
		yield b"partial"
		try:
			raise ValueError("Too late")
		except ValueError:
			start_response("500 Internal Server Error", [], sys.exc_info())
		yield b"never"

	_, _, body = WSGIHandler(app)({})
	items = iter(body)
	assert next(items) == b"partial"
	with pytest.raises(ValueError):
		next(items)


# EOF
