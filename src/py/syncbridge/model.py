import errno
import io
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, NamedTuple, TypeAlias

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------

TEnviron: TypeAlias = dict[str, Any]
THeaders: TypeAlias = Mapping[str, Any] | Iterable[tuple[str, Any]]
TBody: TypeAlias = Iterable[bytes | str]
THandler: TypeAlias = Callable[[TEnviron], Any]


class RequestState(Enum):
	"""Lifecycle of the coroutine running a request's handler."""

	Created = 0
	Running = 1
	AwaitingChunk = 2
	Completed = 3
	Failed = 4


# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class SeekUnsupported(io.UnsupportedOperation):
	"""Raised when repositioning a body source that has no replay cache,
	mimicking what pipes and sockets do."""

	def __init__(self, message: str = "Illegal seek") -> None:
		super().__init__(errno.ESPIPE, message)


# -----------------------------------------------------------------------------
#
# RESPONSE
#
# -----------------------------------------------------------------------------


def headerItems(headers: THeaders | None) -> list[tuple[str, str]]:
	"""Flattens headers into `(name, value)` pairs. Mapping values holding
	several lines (like `Set-Cookie`) produce one header per line."""
	if not headers:
		return []
	res: list[tuple[str, str]] = []
	items = headers.items() if isinstance(headers, Mapping) else headers
	for name, value in items:
		for line in str(value).split("\n"):
			res.append((str(name), line))
	return res


def header(headers: THeaders | None, name: str) -> str | None:
	key = name.lower()
	for k, v in headerItems(headers):
		if k.lower() == key:
			return v
	return None


class ProducedResponse(NamedTuple):
	"""A response produced by a handler, its body is consumed only once."""

	status: int
	headers: THeaders
	body: TBody

	@staticmethod
	def From(value: Any) -> "ProducedResponse":
		"""Validates the `(status, headers, body)` triple returned by
		a handler."""
		if isinstance(value, ProducedResponse):
			return value
		try:
			status, headers, body = value
		except (TypeError, ValueError) as e:
			raise TypeError(
				f"Handler must return a (status, headers, body) triple, got: {value!r}"
			) from e
		if isinstance(status, str):
			# WSGI-style status line, like `200 OK`
			status = status.split(" ", 1)[0]
		if isinstance(body, (bytes, str)):
			body = [body]
		elif body is None:
			body = []
		return ProducedResponse(int(status), headers or {}, body)


# EOF
