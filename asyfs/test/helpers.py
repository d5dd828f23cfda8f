import asyncio
import logging

import h11

from asyfs.protocol.http import HTTPRequest, ResponseWriter


class FakeWrapper:
    """Stands in for HTTPConnectionWrapper, records everything sent"""
    def __init__(self, body_chunks = ()):
        self.sent = []
        self.keep_alive = True
        self.incoming = [h11.Data(data=c) for c in body_chunks] + [h11.EndOfMessage()]

    async def send(self, event):
        self.sent.append(event)

    async def next_event(self):
        return self.incoming.pop(0)

    def basic_headers(self):
        return [("Date", b"Thu, 01 Jan 1970 00:00:00 GMT"), ("Server", b"asyfs-test")]

    def debug(self, *args):
        return

    @property
    def response(self):
        for event in self.sent:
            if isinstance(event, h11.Response):
                return event
        return None

    @property
    def status_code(self):
        return self.response.status_code

    @property
    def body(self):
        return b''.join(e.data for e in self.sent if isinstance(e, h11.Data))

    def header(self, name, default=None):
        name = name.lower().encode('latin-1')
        for k, v in self.response.headers:
            if k == name:
                return v.decode('latin-1')
        return default


def make_request(method = 'GET', target = '/', headers = None, body = b'', chunk_size = None, remote_addr = '127.0.0.1:50000'):
    hdrs = [('Host', 'localhost:2690')]
    if headers is not None:
        hdrs.extend(headers)
    chunks = []
    if body:
        hdrs.append(('Content-Length', str(len(body))))
        if chunk_size is None:
            chunks = [body]
        else:
            chunks = [body[i:i+chunk_size] for i in range(0, len(body), chunk_size)]
    wrapper = FakeWrapper(chunks)
    event = h11.Request(method=method, target=target, headers=hdrs)
    request = HTTPRequest(wrapper, event, remote_addr)
    return request, wrapper

def call(handler, request, wrapper):
    """Runs `handler` the way the server does and returns the fake wrapper"""
    async def run():
        w = ResponseWriter(wrapper, request)
        await handler(w, request)
        await w.finish()
    asyncio.run(run())
    return wrapper

def build_multipart(files, boundary = 'asyfsboundary', fields = ()):
    """files: iterable of (field name, filename, content bytes)"""
    b = boundary.encode('ascii')
    data = b''
    for name, value in fields:
        data += b'--' + b + b'\r\n'
        data += ('Content-Disposition: form-data; name="%s"\r\n\r\n' % name).encode('utf-8')
        data += value.encode('utf-8') + b'\r\n'
    for name, filename, content in files:
        data += b'--' + b + b'\r\n'
        data += ('Content-Disposition: form-data; name="%s"; filename="%s"\r\n' % (name, filename)).encode('utf-8')
        data += b'Content-Type: application/octet-stream\r\n\r\n'
        data += content + b'\r\n'
    data += b'--' + b + b'--\r\n'
    return data, 'multipart/form-data; boundary=%s' % boundary


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)

    @property
    def messages(self):
        return [r.getMessage() for r in self.records]

def make_logger(name):
    logger = logging.getLogger(name)
    logger.handlers = []
    handler = ListHandler()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, handler


async def http_request(port, method, target, headers = (), body = b''):
    """Minimal h11 client, returns (h11.Response, body bytes)"""
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        conn = h11.Connection(h11.CLIENT)
        hdrs = [('Host', 'localhost')] + list(headers)
        if body:
            hdrs.append(('Content-Length', str(len(body))))
        writer.write(conn.send(h11.Request(method=method, target=target, headers=hdrs)))
        if body:
            writer.write(conn.send(h11.Data(data=body)))
        writer.write(conn.send(h11.EndOfMessage()))
        await writer.drain()

        response = None
        data = b''
        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                conn.receive_data(await reader.read(65536))
                continue
            if isinstance(event, h11.Response):
                response = event
            elif isinstance(event, h11.Data):
                data += event.data
            elif isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
                break
        return response, data
    finally:
        writer.close()

def response_header(response, name, default=None):
    name = name.lower().encode('latin-1')
    for k, v in response.headers:
        if k == name:
            return v.decode('latin-1')
    return default
