import asyncio
import logging

from asyfs import logger as asyfslogger
from asyfs.common.connection import ServerConnection


class ListenerServer:
	"""
	TCP accept loop. Accepted connections are queued and handed out by `serve`
	until `close` is called.
	"""
	def __init__(self, bind_addr:str, port:int, read_timeout:float = None, write_timeout:float = None, logger:logging.Logger = None):
		self.bind_addr = bind_addr
		self.port = port
		self.read_timeout = read_timeout
		self.write_timeout = write_timeout
		self.logger = logger if logger is not None else asyfslogger
		self.connection_queue = asyncio.Queue()
		self.closed_evt = asyncio.Event()
		self.server = None

	@property
	def bound_port(self) -> int:
		if self.server is None or not self.server.sockets:
			return 0
		return self.server.sockets[0].getsockname()[1]

	async def __handle_connection(self, reader, writer):
		connection = ServerConnection(reader, writer, read_timeout=self.read_timeout, write_timeout=self.write_timeout)
		if self.closed_evt.is_set():
			await connection.close()
			return
		await self.connection_queue.put(connection)

	async def start(self):
		if self.server is not None:
			return
		self.server = await asyncio.start_server(self.__handle_connection, self.bind_addr, self.port)
		self.logger.debug('Listening on %s:%s' % (self.bind_addr, self.bound_port))

	async def serve(self):
		if self.server is None:
			await self.start()
		try:
			while not self.closed_evt.is_set():
				connection = await self.connection_queue.get()
				if connection is None:
					break
				yield connection
		finally:
			# connections accepted after the listener was closed are never handed out
			while not self.connection_queue.empty():
				connection = self.connection_queue.get_nowait()
				if connection is not None:
					await connection.close()

	async def close(self):
		"""Stops accepting new connections. Already handed out connections are left alone."""
		if self.closed_evt.is_set():
			return
		self.closed_evt.set()
		if self.server is not None:
			self.server.close()
		self.connection_queue.put_nowait(None)
