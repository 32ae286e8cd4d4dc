import argparse
import importlib
import sys
from typing import Any

from . import config
from .proxy import Proxy
from .server import run
from .utils.logging import error, info
from .wsgi import WSGIHandler


def load(path: str) -> Any:
	"""Loads the object at `module:attribute`."""
	module_name, _, attribute = path.partition(":")
	if not module_name or not attribute:
		raise ValueError(f"Expected module:attribute, got: {path}")
	value: Any = importlib.import_module(module_name)
	for name in attribute.split("."):
		value = getattr(value, name)
	return value


def main(args: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(
		prog="syncbridge",
		description="Serves a synchronous request handler over HTTP/1.1",
	)
	parser.add_argument("handler", help="The handler, as module:attribute")
	parser.add_argument(
		"--wsgi", action="store_true", help="The handler is a WSGI application"
	)
	parser.add_argument("-H", "--host", default=config.HOST)
	parser.add_argument("-p", "--port", type=int, default=config.PORT)
	parser.add_argument("-w", "--workers", type=int, default=config.WORKERS)
	parser.add_argument(
		"--no-rewind",
		action="store_true",
		help="Don't cache the request body, the input can't be rewound",
	)
	options = parser.parse_args(args)
	# Handlers are usually found relative to where we're started
	if "" not in sys.path:
		sys.path.insert(0, "")
	try:
		target = load(options.handler)
	except (ImportError, AttributeError, ValueError) as e:
		error(f"Could not load handler: {options.handler}", "LOADERR", Error=str(e))
		return 1
	proxy: Proxy
	if isinstance(target, Proxy):
		proxy = target
	elif isinstance(target, type) and issubclass(target, Proxy):
		proxy = target(rewindable=False if options.no_rewind else None)
	else:
		proxy = Proxy(
			WSGIHandler(target) if options.wsgi else target,
			rewindable=False if options.no_rewind else None,
		)
	info("Starting syncbridge", Handler=options.handler, Environment=config.ENVIRONMENT)
	run(proxy, host=options.host, port=options.port, workers=options.workers)
	return 0


if __name__ == "__main__":
	sys.exit(main())

# EOF
