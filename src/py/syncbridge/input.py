from tempfile import TemporaryFile
from typing import IO, Callable, Iterator

from .model import SeekUnsupported
from .utils.io import EOL, asBytes

# --
# ## Request input
#
# The `ReplayBuffer` is what handlers get as `wsgi.input`. It pulls request
# body chunks lazily from a source (typically the request coroutine, which
# suspends the handler until the chunk arrives from the network), and gives
# them blocking file-like read semantics. When rewindable, every consumed byte
# is appended to a temporary file so that the body can be read again from the
# start.

TSource = Callable[[], bytes | None]


class ReplayBuffer:
	"""A read-only, optionally rewindable, file-like view over a sequence of
	chunks pulled from `source`. The source returns `None` to signal the end
	of the body."""

	__slots__ = ["source", "pending", "cache", "cacheSize", "eof", "closed"]

	def __init__(self, source: TSource, rewindable: bool = True) -> None:
		self.source: TSource = source
		# At most one chunk that was pulled but not fully consumed
		self.pending: bytes | None = None
		self.cache: IO[bytes] | None = (
			TemporaryFile(prefix="syncbridge-input") if rewindable else None
		)
		self.cacheSize: int = 0
		self.eof: bool = False
		self.closed: bool = False

	# =========================================================================
	# API
	# =========================================================================

	def read(
		self, size: int | None = None, into: bytearray | None = None
	) -> bytes | bytearray | None:
		"""Reads up to `size` bytes, or everything when `size` is `None` or
		negative. When `into` is given, it is cleared and filled with the
		result, and returned. Returns `None` when `size` is positive and the
		body has been fully consumed."""
		self._checkClosed()
		limit: int | None = None if size is None or size < 0 else size
		parts: list[bytes] = []
		read: int = 0
		# Bytes replayed from the cache after a rewind come first
		if limit != 0 and self._hasCached():
			cached = self.cache.read(-1 if limit is None else limit) if self.cache else b""
			parts.append(cached)
			read += len(cached)
		while limit is None or read < limit:
			if self.pending is None:
				self.pending = self._pull()
				if self.pending is None:
					break
			chunk: bytes = self.pending
			remaining: int | None = None if limit is None else limit - read
			if remaining is not None and remaining < len(chunk):
				consumed = chunk[:remaining]
				self.pending = chunk[remaining:]
			else:
				consumed = chunk
				self.pending = None
			parts.append(consumed)
			read += len(consumed)
			self._store(consumed)
		if into is not None:
			into.clear()
			for _ in parts:
				into += _
		if limit and not read:
			return None
		elif into is not None:
			return into
		else:
			return parts[0] if len(parts) == 1 else b"".join(parts)

	def readline(self, size: int | None = None) -> bytes:
		"""Reads up to and including the next newline, returns `b""` at the
		end of the body."""
		self._checkClosed()
		limit: int | None = None if size is None or size < 0 else size
		parts: list[bytes] = []
		read: int = 0
		while limit is None or read < limit:
			if self._hasCached() and self.cache:
				line = self.cache.readline(-1 if limit is None else limit - read)
				parts.append(line)
				read += len(line)
				if line.endswith(EOL):
					break
				continue
			if self.pending is None:
				self.pending = self._pull()
				if self.pending is None:
					break
			chunk: bytes = self.pending
			end: int = chunk.find(EOL)
			take: int = len(chunk) if end == -1 else end + 1
			if limit is not None:
				take = min(take, limit - read)
			consumed = chunk[:take]
			self.pending = chunk[take:] if take < len(chunk) else None
			parts.append(consumed)
			read += len(consumed)
			self._store(consumed)
			if consumed.endswith(EOL):
				break
		return b"".join(parts)

	def readlines(self, hint: int | None = None) -> list[bytes]:
		res: list[bytes] = []
		total: int = 0
		while line := self.readline():
			res.append(line)
			total += len(line)
			if hint is not None and 0 < hint <= total:
				break
		return res

	def __iter__(self) -> Iterator[bytes]:
		while line := self.readline():
			yield line

	def rewind(self) -> None:
		"""Moves back to the start of the body, only possible with a
		replay cache."""
		self._checkClosed()
		if self.cache is None:
			raise SeekUnsupported()
		self.cache.seek(0)

	def seek(self, offset: int, whence: int = 0) -> int:
		if offset != 0 or whence != 0:
			raise SeekUnsupported("Only rewinding to the start is supported")
		self.rewind()
		return 0

	def seekable(self) -> bool:
		return self.cache is not None

	def readable(self) -> bool:
		return True

	def close(self) -> None:
		"""Deletes the replay cache. Can be called more than once."""
		if self.closed:
			return
		self.closed = True
		self.pending = None
		if self.cache:
			self.cache.close()
			self.cache = None

	# =========================================================================
	# HELPERS
	# =========================================================================

	def _pull(self) -> bytes | None:
		"""Returns the next non-empty chunk from the source, or `None` once
		the source is exhausted."""
		while not self.eof:
			chunk = self.source()
			if chunk is None:
				self.eof = True
			elif chunk:
				return asBytes(chunk)
		return None

	def _hasCached(self) -> bool:
		return bool(self.cache and self.cache.tell() < self.cacheSize)

	def _store(self, data: bytes) -> None:
		# Cached bytes are always fully replayed before new ones are pulled,
		# so the cache cursor is at its end here.
		if self.cache and data:
			self.cache.write(data)
			self.cacheSize += len(data)

	def _checkClosed(self) -> None:
		if self.closed:
			raise ValueError("I/O operation on closed request input")

	def __repr__(self) -> str:
		return f"<ReplayBuffer{' rewindable' if self.cache else ''}{' eof' if self.eof else ''}{' closed' if self.closed else ''}>"


# EOF
