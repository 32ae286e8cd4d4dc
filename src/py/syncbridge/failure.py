from typing import Any

from . import config
from .input import ReplayBuffer
from .model import ProducedResponse, TEnviron, THandler
from .utils.io import asBytes
from .utils.logging import exception

GENERIC_ERROR: bytes = b"An error occurred"


class FailureTranslator:
	"""Calls handlers, turning any failure into a `500` response instead of
	letting it escape."""

	__slots__ = ["production"]

	def __init__(self, production: bool | None = None) -> None:
		self.production: bool = config.PRODUCTION if production is None else production

	def call(
		self, handler: THandler, environ: TEnviron, input: ReplayBuffer
	) -> ProducedResponse:
		try:
			return ProducedResponse.From(handler(environ))
		except Exception as e:
			return self.translate(e, environ)
		finally:
			# The request is over for the handler, whether it has read the
			# whole body or not.
			input.close()

	def translate(self, error: Exception, environ: TEnviron) -> ProducedResponse:
		exception(
			error,
			f"Handler failed for {environ.get('REQUEST_METHOD', '-')} {environ.get('PATH_INFO', '-')}",
		)
		environ["syncbridge.exception"] = error
		body: bytes = GENERIC_ERROR if self.production else asBytes(repr(error))
		headers: dict[str, Any] = {
			"Content-Type": "text/plain",
			"Content-Length": str(len(body)),
		}
		return ProducedResponse(500, headers, [body])


# EOF
