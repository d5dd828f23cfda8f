import time
import asyncio

from asyfs.config import ServerConfig
from asyfs.controller import Controller
from asyfs.health import HealthState
from asyfs.protocol.http import send_body
from asyfs.protocol.httpserver import HTTPServer
from asyfs.test.helpers import http_request, response_header, build_multipart, make_logger


def make_server(root, handler = None, max_upload_size = 16 << 20, read_timeout = 10):
    logger, _ = make_logger('asyfs.test.httpserver')
    health = HealthState()
    health.mark_ready()
    config = ServerConfig(str(root), '127.0.0.1', 0, max_upload_size=max_upload_size, read_timeout=read_timeout, grace_period=1)
    if handler is None:
        handler = Controller(str(root), max_upload_size, logger=logger, health=health).handler()
    return HTTPServer(handler, config, logger=logger)

def run_with_server(server, scenario):
    """Starts `server`, runs `scenario(server)` and drops the server afterwards"""
    async def main():
        await server.start()
        try:
            await scenario(server)
        finally:
            await server.terminate()
    asyncio.run(main())

async def read_until_eof(reader, timeout):
    data = b''
    try:
        while True:
            chunk = await asyncio.wait_for(reader.read(65536), timeout=timeout)
            if not chunk:
                break
            data += chunk
    except ConnectionResetError:
        pass
    return data


def test_listing_and_request_id(tmp_path):
    (tmp_path / 'a.txt').write_bytes(b'a' * 500)

    async def scenario(server):
        assert server.port != 0
        response, body = await http_request(server.port, 'GET', '/')
        assert response.status_code == 200
        assert b'a.txt' in body
        assert response_header(response, 'X-Request-Id')

        response, _ = await http_request(server.port, 'GET', '/', headers=[('X-Request-Id', 'corr-1')])
        assert response_header(response, 'X-Request-Id') == 'corr-1'

        results = await asyncio.gather(*[http_request(server.port, 'GET', '/healthz') for _ in range(5)])
        ids = set(response_header(r, 'X-Request-Id') for r, _ in results)
        assert len(ids) == 5
        assert all(r.status_code == 200 for r, _ in results)

    run_with_server(make_server(tmp_path), scenario)

def test_download(tmp_path):
    (tmp_path / 'data.bin').write_bytes(b'0123456789' * 100000)

    async def scenario(server):
        response, body = await http_request(server.port, 'GET', '/data.bin')
        assert response.status_code == 200
        assert body == b'0123456789' * 100000

        response, body = await http_request(server.port, 'GET', '/../../etc/passwd')
        assert response.status_code == 404

    run_with_server(make_server(tmp_path), scenario)

def test_upload_end_to_end(tmp_path):
    (tmp_path / 'sub').mkdir()
    body, content_type = build_multipart([('files', 'up.txt', b'uploaded')])

    async def scenario(server):
        response, _ = await http_request(server.port, 'POST', '/upload', headers=[
            ('Content-Type', content_type),
            ('Referer', 'http://localhost/sub/'),
        ], body=body)
        assert response.status_code == 302
        assert response_header(response, 'Location') == 'http://localhost/sub/'

    run_with_server(make_server(tmp_path), scenario)
    assert (tmp_path / 'sub' / 'up.txt').read_bytes() == b'uploaded'

def test_upload_too_large_end_to_end(tmp_path):
    body, content_type = build_multipart([('files', 'big.bin', b'x' * 100)])

    async def scenario(server):
        response, data = await http_request(server.port, 'POST', '/upload', headers=[
            ('Content-Type', content_type),
            ('Referer', 'http://localhost/'),
        ], body=body)
        assert response.status_code == 413
        assert data == b'Request Entity Too Large\n'

    run_with_server(make_server(tmp_path, max_upload_size=10), scenario)
    assert not (tmp_path / 'big.bin').exists()

def test_handler_exception_returns_500(tmp_path):
    async def broken(w, req):
        raise RuntimeError('boom')

    async def scenario(server):
        response, body = await http_request(server.port, 'GET', '/')
        assert response.status_code == 500
        assert body == b'Internal Server Error\n'

    run_with_server(make_server(tmp_path, handler=broken), scenario)

def test_malformed_request_gets_request_id(tmp_path):
    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)
        writer.write(b'NOT A REQUEST\r\n\r\n')
        await writer.drain()
        data = await read_until_eof(reader, 2)
        writer.close()
        assert data.startswith(b'HTTP/1.1 400')
        assert b'x-request-id: ' in data.lower()

    run_with_server(make_server(tmp_path), scenario)

def test_read_timeout_covers_whole_request(tmp_path):
    request = b'GET / HTTP/1.1\r\nHost: localhost\r\nUser-Agent: slow\r\n\r\n'

    async def scenario(server):
        reader, writer = await asyncio.open_connection('127.0.0.1', server.port)

        async def trickle():
            try:
                for i in range(len(request)):
                    writer.write(request[i:i+1])
                    await writer.drain()
                    await asyncio.sleep(0.1)
            except ConnectionError:
                pass

        sender = asyncio.create_task(trickle())
        start = time.monotonic()
        data = await read_until_eof(reader, 5)
        elapsed = time.monotonic() - start
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        writer.close()

        assert not data.startswith(b'HTTP/1.1 200')
        # every single read finishes well within the timeout, the whole request does not
        assert elapsed < 2

    run_with_server(make_server(tmp_path, read_timeout=0.3), scenario)

def test_keep_alive_disabled_closes_connection(tmp_path):
    async def hello(w, req):
        await send_body(w, 200, b'hello', 'text/plain')

    async def scenario(server):
        response, _ = await http_request(server.port, 'GET', '/')
        assert response_header(response, 'Connection') is None

        server.set_keep_alives_enabled(False)
        response, body = await http_request(server.port, 'GET', '/')
        assert body == b'hello'
        assert response_header(response, 'Connection') == 'close'

    run_with_server(make_server(tmp_path, handler=hello), scenario)
