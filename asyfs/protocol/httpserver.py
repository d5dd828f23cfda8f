import asyncio
import logging

import h11

from asyfs import logger as asyfslogger
from asyfs.config import ServerConfig
from asyfs.errors import ShutdownTimeoutError
from asyfs.middleware import REQUEST_ID_HEADER, request_id_generator
from asyfs.server import ListenerServer
from asyfs.common.connection import ServerConnection
from asyfs.protocol.http import HTTPConnectionWrapper, HTTPRequest, ResponseWriter, http_error


class ClientSession:
    def __init__(self, wrapper:HTTPConnectionWrapper, connection:ServerConnection):
        self.wrapper = wrapper
        self.connection = connection
        self.task:asyncio.Task = None
        # True while a parsed request is being answered
        self.busy = False


class HTTPServer:
    """
    Serves HTTP/1.1 on the configured address. Every request is passed to
    `handler`, a coroutine function taking a ResponseWriter and an HTTPRequest.
    `next_request_id` labels the error responses sent before a request could be parsed.
    """
    def __init__(self, handler, config:ServerConfig, logger:logging.Logger = None, next_request_id = None):
        self.handler = handler
        self.next_request_id = next_request_id if next_request_id is not None else request_id_generator()
        self.config = config
        self.logger = logger if logger is not None else asyfslogger
        self.listener:ListenerServer = None
        self.clients = {}
        self.keep_alive = True
        self.started_evt = asyncio.Event()
        self.stopped_evt = asyncio.Event()
        self.__serve_task = None

    @property
    def port(self) -> int:
        if self.listener is None:
            return 0
        return self.listener.bound_port

    async def start(self):
        """Binds the listener and starts accepting connections in the background"""
        if self.listener is not None:
            return
        self.listener = ListenerServer(
            self.config.bind_addr,
            self.config.port,
            read_timeout=self.config.read_timeout,
            write_timeout=self.config.write_timeout,
            logger=self.logger
        )
        await self.listener.start()
        self.__serve_task = asyncio.create_task(self.__accept_loop())
        self.started_evt.set()

    def set_keep_alives_enabled(self, enabled:bool):
        self.keep_alive = enabled
        for session in list(self.clients.values()):
            session.wrapper.keep_alive = enabled
            if enabled is False and session.busy is False and session.wrapper.has_pending_request is False:
                # idle keep-alive connection, the pending read returns EOF
                session.connection.abort()

    async def shutdown(self, timeout:float):
        """
        Stops accepting connections, disables keep-alives and waits at most
        `timeout` seconds for the in-flight requests to finish.

        Raises:
            ShutdownTimeoutError: requests were still running when the timeout elapsed
        """
        self.set_keep_alives_enabled(False)
        if self.listener is not None:
            await self.listener.close()
        if self.__serve_task is not None:
            await self.__serve_task

        tasks = [session.task for session in self.clients.values() if session.task is not None]
        if len(tasks) > 0:
            self.logger.debug('Waiting for %s connection(s) to finish' % len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if len(pending) > 0:
                raise ShutdownTimeoutError(timeout, len(pending))
        self.stopped_evt.set()

    async def terminate(self):
        """Drops every connection immediately"""
        self.keep_alive = False
        if self.listener is not None:
            await self.listener.close()
        for session in list(self.clients.values()):
            session.connection.abort()
            if session.task is not None:
                session.task.cancel()
        self.clients = {}
        if self.__serve_task is not None and not self.__serve_task.done():
            self.__serve_task.cancel()
        self.stopped_evt.set()

    async def __accept_loop(self):
        try:
            async for connection in self.listener.serve():
                if self.keep_alive is False:
                    # draining, the listener is about to close
                    await connection.close()
                    continue
                wrapper = HTTPConnectionWrapper(connection, logger=self.logger)
                wrapper.keep_alive = self.keep_alive
                session = ClientSession(wrapper, connection)
                self.clients[wrapper.client_id] = session
                session.task = asyncio.create_task(self.__handle_connection(session))
        except Exception:
            self.logger.exception('Accept loop failed')

    async def __process_request(self, wrapper:HTTPConnectionWrapper, request:HTTPRequest):
        w = ResponseWriter(wrapper, request)
        try:
            await self.handler(w, request)
        except Exception as e:
            self.logger.exception('Error while handling %s %s' % (request.method, request.path))
            if w.headers_sent is True:
                raise
            await http_error(w, 'Internal Server Error', 500)
        await w.finish()

    async def __handle_connection(self, session:ClientSession):
        wrapper = session.wrapper
        client_id = wrapper.client_id
        served = 0
        wrapper.debug('New client connected from %s' % session.connection.remote_addr)
        try:
            while True:
                states = wrapper.conn.states
                if h11.MUST_CLOSE in states.values() or h11.CLOSED in states.values():
                    break

                if states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
                    wrapper.conn.start_next_cycle()
                    continue

                if states != {h11.CLIENT: h11.IDLE, h11.SERVER: h11.IDLE}:
                    # request body left unread by the handler
                    wrapper.debug('Connection state not idle', states)
                    break

                session.busy = False
                if wrapper.keep_alive is False and served > 0:
                    break

                wrapper.start_request_cycle()
                event = await wrapper.next_event()
                if type(event) is h11.Request:
                    session.busy = True
                    request = HTTPRequest(wrapper, event, session.connection.remote_addr)
                    await self.__process_request(wrapper, request)
                    served += 1
                    continue
                if type(event) is h11.ConnectionClosed:
                    break
                wrapper.debug('Unexpected event type %s' % type(event))
                break

        except h11.RemoteProtocolError as e:
            wrapper.debug('Protocol error: %s' % e)
            if wrapper.conn.our_state in (h11.IDLE, h11.SEND_RESPONSE):
                try:
                    body = (str(e) + '\n').encode('utf-8')
                    headers = wrapper.basic_headers()
                    headers.extend([
                        ("Content-Type", b"text/plain; charset=utf-8"),
                        ("Content-Length", str(len(body)).encode("ascii")),
                        ("Connection", b"close"),
                        (REQUEST_ID_HEADER, self.next_request_id().encode('ascii')),
                    ])
                    await wrapper.send(h11.Response(status_code=e.error_status_hint, headers=headers))
                    await wrapper.send(h11.Data(data=body))
                    await wrapper.send(h11.EndOfMessage())
                except Exception as exc:
                    wrapper.debug('Failed to send error response: %s' % exc)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            wrapper.debug('Connection error: %r' % e)
        finally:
            session.busy = False
            await wrapper.shutdown_and_clean_up()
            self.clients.pop(client_id, None)
