import asyncio


class ServerConnection:
	"""
	One accepted TCP connection. Every read and every write drain is bounded
	by the configured timeouts (None means no timeout).
	"""
	def __init__(self, reader:asyncio.StreamReader, writer:asyncio.StreamWriter, read_timeout:float = None, write_timeout:float = None, buffer_size:int = 65535):
		self.reader = reader
		self.writer = writer
		self.read_timeout = read_timeout
		self.write_timeout = write_timeout
		self.buffer_size = buffer_size
		self.closing = False
		self.closed_evt = asyncio.Event()

	def get_extra_info(self, name, default=None):
		if self.writer is None:
			return default
		return self.writer.get_extra_info(name, default)

	@property
	def remote_addr(self) -> str:
		peer = self.get_extra_info('peername')
		if not peer:
			return ''
		if isinstance(peer, tuple):
			host, port = peer[0], peer[1]
			if ':' in host:
				return '[%s]:%s' % (host, port)
			return '%s:%s' % (host, port)
		return str(peer)

	async def close(self):
		if self.closing is True:
			return
		self.closing = True
		if self.writer is not None:
			self.writer.close()
		self.closed_evt.set()

	def abort(self):
		"""Drops the connection without flushing pending data"""
		self.closing = True
		if self.writer is not None:
			self.writer.transport.abort()
		self.closed_evt.set()

	async def write(self, data:bytes):
		if not data:
			return
		self.writer.write(data)
		await asyncio.wait_for(self.writer.drain(), timeout=self.write_timeout)

	async def read_one(self, timeout:float = None) -> bytes:
		"""Returns the next chunk of incoming data, b'' on EOF. `timeout` overrides the read timeout."""
		if self.closing is True:
			return b''
		if timeout is None:
			timeout = self.read_timeout
		return await asyncio.wait_for(self.reader.read(self.buffer_size), timeout=timeout)
