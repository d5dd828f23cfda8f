import asyncio
import html
import datetime
from http import HTTPStatus
import email.utils
import urllib.parse
import logging
from itertools import count

import h11

from asyfs import logger as asyfslogger
from asyfs._version import __version__
from asyfs.common.connection import ServerConnection


SERVER_IDENT = " ".join(
    [f"asyfs/{__version__}", h11.PRODUCT_ID]
).encode("ascii")

# responses to these never carry a body
NO_BODY_STATUSES = (204, 304)


def format_date_time(dt=None):
    """Generate a RFC 7231 / RFC 9110 IMF-fixdate string"""
    if dt is None:
        dt = datetime.datetime.now(datetime.timezone.utc)
    return email.utils.format_datetime(dt, usegmt=True)


class Headers:
    """Ordered, case-insensitive multi-map of header names to string values"""
    def __init__(self, items=None):
        self._items = []
        if items is not None:
            for name, value in items:
                self.add(name, value)

    @staticmethod
    def _to_str(x):
        if isinstance(x, bytes):
            return x.decode('latin-1')
        return str(x)

    def add(self, name, value):
        self._items.append((self._to_str(name), self._to_str(value)))

    def set(self, name, value):
        self.remove(name)
        self.add(name, value)

    def remove(self, name):
        name = self._to_str(name).lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != name]

    def get(self, name, default=None):
        name = self._to_str(name).lower()
        for k, v in self._items:
            if k.lower() == name:
                return v
        return default

    def to_h11(self):
        return [(k.encode('latin-1'), v.encode('latin-1')) for k, v in self._items]

    def __contains__(self, name):
        return self.get(name) is not None

    def __repr__(self):
        return 'Headers(%r)' % self._items


class HTTPConnectionWrapper:
    """Drives the h11 server state machine over one ServerConnection"""
    _next_id = count()

    def __init__(self, stream:ServerConnection, logger:logging.Logger = None):
        self.logger = logger if logger is not None else asyfslogger
        self.stream = stream
        self.conn = h11.Connection(h11.SERVER)
        self.ident = SERVER_IDENT
        self.keep_alive = True
        # loop time by which the current request must be fully read
        self.read_deadline = None
        # bytes of a not yet parsed request arrived
        self.request_started = False
        # A unique id for this connection, to include in debugging output
        self.client_id = next(HTTPConnectionWrapper._next_id)

    def debug(self, *args):
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug('[%s] %s' % (self.client_id, ' '.join(str(x) for x in args)))

    def set_read_deadline(self, timeout:float):
        if timeout is None:
            self.read_deadline = None
            return
        self.read_deadline = asyncio.get_running_loop().time() + timeout

    @property
    def has_pending_request(self) -> bool:
        return self.request_started

    def start_request_cycle(self):
        """
        Called while waiting for the next request. The read deadline starts
        with the first byte of the request and covers its headers and body.
        """
        self.request_started = len(self.conn.trailing_data[0]) > 0
        self.set_read_deadline(self.stream.read_timeout if self.request_started else None)

    async def send(self, event):
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            await self.stream.write(data)
        except BaseException:
            # the peer is gone or too slow, this connection can not be used anymore
            self.conn.send_failed()
            raise

    async def _read_from_peer(self):
        if self.conn.they_are_waiting_for_100_continue:
            self.debug("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(
                status_code=100, headers=self.basic_headers()
            )
            await self.send(go_ahead)
        try:
            timeout = None
            if self.read_deadline is not None:
                timeout = self.read_deadline - asyncio.get_running_loop().time()
                if timeout <= 0:
                    raise asyncio.TimeoutError()
            data = await self.stream.read_one(timeout)
            if data and self.request_started is False and self.conn.their_state is h11.IDLE:
                self.request_started = True
                self.set_read_deadline(self.stream.read_timeout)
        except asyncio.TimeoutError:
            self.debug('Read timeout')
            data = b""
        except Exception as exc:
            self.debug('Error reading from peer:', exc)
            # They've stopped listening. Not much we can do about it here.
            data = b""
        self.conn.receive_data(data)

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            self.debug('Event:', type(event).__name__)
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    async def shutdown_and_clean_up(self):
        try:
            await self.stream.close()
        except Exception as exc:
            self.debug('Error closing connection:', exc)

    def basic_headers(self):
        # HTTP requires these headers in all responses
        return [
            ("Date", format_date_time().encode("ascii")),
            ("Server", self.ident),
        ]


class HTTPRequest:
    def __init__(self, wrapper:HTTPConnectionWrapper, event:h11.Request, remote_addr:str = ''):
        self._wrapper = wrapper
        self.method = event.method.decode('ascii')
        self.target = event.target.decode('latin-1')
        self.http_version = event.http_version.decode('ascii')
        self.headers = Headers(event.headers)
        self.remote_addr = remote_addr
        url_parts = urllib.parse.urlsplit(self.target)
        # still percent-encoded
        self.path = url_parts.path or '/'
        self.query = url_parts.query
        self.body_consumed = False

    @property
    def user_agent(self):
        return self.headers.get('User-Agent', '')

    @property
    def referer(self):
        return self.headers.get('Referer', '')

    @property
    def content_type(self):
        return self.headers.get('Content-Type', '')

    async def body_chunks(self):
        """Yields the request body in chunks as they arrive"""
        if self.body_consumed is True:
            return
        while True:
            event = await self._wrapper.next_event()
            if type(event) is h11.Data:
                yield event.data
            elif type(event) is h11.EndOfMessage:
                self.body_consumed = True
                return
            else:
                raise ConnectionError('Connection closed while reading request body')

    def __repr__(self):
        return 'HTTPRequest(%s %s from %s)' % (self.method, self.target, self.remote_addr)


class ResponseWriter:
    """
    Buffers the status line and headers until the first body write, then
    streams the body as h11 events.
    """
    def __init__(self, wrapper:HTTPConnectionWrapper, request:HTTPRequest):
        self._wrapper = wrapper
        self._request = request
        self.headers = Headers()
        self.status_code = None
        self.headers_sent = False
        self.finished = False
        self.bytes_written = 0

    @property
    def sends_body(self):
        return self._request.method != 'HEAD' and self.status_code not in NO_BODY_STATUSES

    async def write_header(self, status_code:int):
        if self.headers_sent is True:
            self._wrapper.debug('Superfluous write_header call with status %s' % status_code)
            return
        self.status_code = status_code
        headers = self._wrapper.basic_headers()
        headers.extend(self.headers.to_h11())
        if self._wrapper.keep_alive is False and 'Connection' not in self.headers:
            headers.append((b'Connection', b'close'))
        self.headers_sent = True
        await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))

    async def write(self, data:bytes):
        if self.headers_sent is False:
            await self.write_header(200)
        if not data or not self.sends_body:
            return
        await self._wrapper.send(h11.Data(data=data))
        self.bytes_written += len(data)

    async def finish(self):
        if self.finished is True:
            return
        if self.headers_sent is False:
            if 'Content-Length' not in self.headers:
                self.headers.set('Content-Length', '0')
            await self.write_header(200)
        self.finished = True
        await self._wrapper.send(h11.EndOfMessage())


async def send_body(w:ResponseWriter, status_code:int, body:bytes, content_type:str):
    w.headers.set('Content-Type', content_type)
    w.headers.set('Content-Length', str(len(body)))
    await w.write_header(status_code)
    await w.write(body)

async def http_error(w:ResponseWriter, message:str, status_code:int):
    """Replies with a plain text error message"""
    w.headers.remove('Content-Length')
    w.headers.set('X-Content-Type-Options', 'nosniff')
    await send_body(w, status_code, (message + '\n').encode('utf-8'), 'text/plain; charset=utf-8')

async def redirect(w:ResponseWriter, location:str, status_code:int = 302):
    w.headers.set('Location', urllib.parse.quote(location, safe="/:?=&#%@!$'()*+,;~"))
    body = b''
    if w._request.method in ('GET', 'HEAD'):
        body = ('<a href="%s">%s</a>.\n' % (html.escape(location), HTTPStatus(status_code).phrase)).encode('utf-8')
    await send_body(w, status_code, body, 'text/html; charset=utf-8')
