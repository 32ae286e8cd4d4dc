import asyncio
from concurrent.futures import Executor
from typing import Any, ClassVar

from . import config
from .connection import Connection
from .driver import RequestDriver
from .failure import FailureTranslator
from .model import TEnviron, THandler
from .streamer import ResponseStreamer

# --
# ## Proxy
#
# A proxy type is declared by subclassing `Proxy` and registering the handler
# requests are forwarded to:
#
# ```
# class App(Proxy):
#     pass
#
# App.Handler(lambda environ: (200, {"Content-Length": "5"}, [b"Hello"]))
# App.RewindableInput(False)
# ```
#
# Options are stored per class, subclasses don't inherit them.


class Proxy:
	"""Forwards requests to a synchronous handler, through a request driver
	per request."""

	_options: ClassVar[dict[str, Any]]

	@classmethod
	def Options(cls) -> dict[str, Any]:
		if "_options" not in cls.__dict__:
			cls._options = {}
		return cls._options

	@classmethod
	def Handler(cls, handler: THandler) -> type["Proxy"]:
		"""Registers the handler called for each request."""
		cls.Options()["handler"] = handler
		return cls

	@classmethod
	def RewindableInput(cls, value: bool) -> type["Proxy"]:
		"""Whether the request input is cached on disk so that it can be
		rewound."""
		cls.Options()["rewindable"] = value
		return cls

	def __init__(
		self,
		handler: THandler | None = None,
		*,
		rewindable: bool | None = None,
		production: bool | None = None,
		logRequests: bool = config.LOG_REQUESTS,
	) -> None:
		options = self.Options()
		self._handler: THandler | None = handler or options.get("handler")
		self.rewindable: bool = (
			rewindable
			if rewindable is not None
			else options.get("rewindable", config.REWINDABLE)
		)
		self.translator: FailureTranslator = FailureTranslator(production)
		self.logRequests: bool = logRequests

	@property
	def handler(self) -> THandler:
		if self._handler is None:
			raise RuntimeError(f"No handler registered for {self.__class__.__name__}")
		return self._handler

	def request(
		self,
		environ: TEnviron,
		connection: Connection,
		*,
		loop: asyncio.AbstractEventLoop,
		executor: Executor | None = None,
		logRequests: bool | None = None,
	) -> RequestDriver:
		"""Called once the request headers are parsed, returns the started
		driver that receives the rest of the request events. `logRequests`
		overrides the proxy's own setting."""
		return RequestDriver(
			self.handler,
			environ,
			connection,
			rewindable=self.rewindable,
			loop=loop,
			executor=executor,
			streamer=ResponseStreamer(
				executor,
				logRequests=self.logRequests if logRequests is None else logRequests,
			),
			translator=self.translator,
		).onHeaders()

	def __repr__(self) -> str:
		return f"({self.__class__.__name__} {self._handler!r}{' :rewindable' if self.rewindable else ''})"


# EOF
