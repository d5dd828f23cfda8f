import os
import logging
import datetime
import mimetypes
import posixpath
import email.utils
import urllib.parse

from asyfs import logger as asyfslogger
from asyfs.errors import AsyfsError, NotFoundError, BadRequestError, \
    PayloadTooLargeError, UploadIOError, RangeNotSatisfiableError
from asyfs.health import HealthState
from asyfs.listing import build_listing, render_listing, load_template, TEMPLATE_PATH
from asyfs.middleware import Middlewares, tracing, request_logging, request_id_generator
from asyfs.multipart import parse_multipart
from asyfs.protocol.http import ResponseWriter, HTTPRequest, send_body, http_error, redirect
from asyfs.utils.formatting import format_duration

FAVICON_PATH = '/favicon.ico'
UPLOAD_PATH = '/upload'
HEALTHZ_PATH = '/healthz'
FILE_CHUNK_SIZE = 512 * 1024


def sanitize_filename(filename:str) -> str:
    """
    Keeps only the final path component of a client supplied filename.

    Raises:
        BadRequestError: nothing usable is left
    """
    if filename is None:
        raise BadRequestError('Missing filename')
    name = filename.replace('\\', '/').split('/')[-1].strip()
    if name in ('', '.', '..') or '\x00' in name:
        raise BadRequestError('Invalid filename: %r' % filename)
    return name

def parse_range(range_header:str, size:int):
    """
    Parses a single `bytes=` range against a file of `size` bytes.

    Returns:
        (start, end) inclusive, or None if the header should be ignored

    Raises:
        RangeNotSatisfiableError: the range lies outside of the file
    """
    if not range_header.startswith('bytes='):
        return None
    spec = range_header[6:].strip()
    if ',' in spec:
        return None
    start, sep, end = spec.partition('-')
    start, end = start.strip(), end.strip()
    if not sep or (start == '' and end == ''):
        return None
    if (start and not start.isdigit()) or (end and not end.isdigit()):
        return None

    if start == '':
        # suffix range, the last N bytes
        suffix = int(end)
        if suffix == 0:
            raise RangeNotSatisfiableError('invalid range: %s' % spec)
        return max(0, size - suffix), size - 1

    start = int(start)
    end = int(end) if end else size - 1
    if start >= size or start > end:
        raise RangeNotSatisfiableError('invalid range: failed to overlap')
    return start, min(end, size - 1)


class Controller:
    """
    Request handlers of the file server.

    Args:
        root_dir (str): Directory tree served by the handlers
        max_upload_size (int): Maximum size of one uploaded file in bytes
        logger (logging.Logger): Log sink, defaults to the package logger
        health (HealthState): Shared readiness state
        next_request_id (callable): Correlation ID generator
        template_path (str): Listing template on disk
    """
    def __init__(self, root_dir:str, max_upload_size:int, logger:logging.Logger = None, health:HealthState = None,
                 next_request_id = None, template_path:str = TEMPLATE_PATH):
        self.root_dir = os.path.realpath(root_dir)
        self.max_upload_size = max_upload_size
        self.logger = logger if logger is not None else asyfslogger
        self.health = health if health is not None else HealthState()
        self.next_request_id = next_request_id if next_request_id is not None else request_id_generator()
        self.template_path = template_path
        self.routes = {
            UPLOAD_PATH : self.upload,
            HEALTHZ_PATH : self.healthz,
        }

    def handler(self):
        """The router wrapped in the request-ID and logging middlewares"""
        return Middlewares([
            tracing(self.next_request_id),
            request_logging(self.logger),
        ]).apply(self.route)

    async def route(self, w:ResponseWriter, req:HTTPRequest):
        handler = self.routes.get(req.path, self.index)
        await handler(w, req)

    def resolve(self, url_path:str) -> str:
        """
        Maps a decoded URL path to a path under the root directory.

        Raises:
            NotFoundError: the path would end up outside of the root
        """
        if '\x00' in url_path:
            raise NotFoundError('Invalid path')
        cleaned = posixpath.normpath('/' + url_path.replace('\\', '/')).lstrip('/')
        path = self.root_dir
        if cleaned and cleaned != '.':
            path = os.path.realpath(os.path.join(self.root_dir, *cleaned.split('/')))
        try:
            if os.path.commonpath([path, self.root_dir]) != self.root_dir:
                raise NotFoundError('Path outside of root: %s' % url_path)
        except ValueError:
            raise NotFoundError('Path outside of root: %s' % url_path)
        return path

    async def fail(self, w:ResponseWriter, req:HTTPRequest, err:AsyfsError):
        if err.status_code >= 500:
            self.logger.error('%s %s: %s' % (req.method, req.path, err.message))
        await http_error(w, err.message, err.status_code)

    async def index(self, w:ResponseWriter, req:HTTPRequest):
        if req.method not in ('GET', 'HEAD'):
            w.headers.set('Allow', 'GET, HEAD')
            return await http_error(w, 'Method Not Allowed', 405)
        # browsers keep asking for it
        if req.path == FAVICON_PATH:
            return

        try:
            url_path = urllib.parse.unquote(req.path)
            path = self.resolve(url_path)
            if not os.path.exists(path):
                raise NotFoundError('404 page not found')

            if os.path.isfile(path):
                return await self.serve_file(w, req, path)
            if not os.path.isdir(path):
                raise NotFoundError('404 page not found')

            if not url_path.endswith('/'):
                location = req.path + '/'
                if req.query:
                    location += '?' + req.query
                return await redirect(w, location, 301)

            listing = build_listing(path, url_path)
            try:
                template = load_template(self.template_path)
                body = render_listing(listing, template).encode('utf-8')
            except OSError as e:
                raise AsyfsError('Error rendering index page: %s' % e, innerexception=e)
            await send_body(w, 200, body, 'text/html; charset=utf-8')

        except NotFoundError as e:
            self.logger.debug('Not found: %s (%s)' % (req.path, e))
            await http_error(w, '404 page not found', 404)
        except AsyfsError as e:
            await self.fail(w, req, e)

    async def serve_file(self, w:ResponseWriter, req:HTTPRequest, path:str):
        try:
            st = os.stat(path)
            f = open(path, 'rb')
        except OSError as e:
            return await self.fail(w, req, AsyfsError('Error opening file: %s' % (e.strerror or e), innerexception=e))

        with f:
            size = st.st_size
            mtime = datetime.datetime.fromtimestamp(int(st.st_mtime), datetime.timezone.utc)
            mime_type, _ = mimetypes.guess_type(path)
            w.headers.set('Last-Modified', email.utils.format_datetime(mtime, usegmt=True))
            w.headers.set('Accept-Ranges', 'bytes')

            range_header = req.headers.get('Range')
            since = req.headers.get('If-Modified-Since')
            if since and range_header is None and self._not_modified(since, mtime):
                return await w.write_header(304)

            start, end, status = 0, size - 1, 200
            if range_header is not None and size > 0:
                try:
                    byte_range = parse_range(range_header, size)
                except RangeNotSatisfiableError as e:
                    w.headers.set('Content-Range', 'bytes */%s' % size)
                    return await http_error(w, e.message, e.status_code)
                if byte_range is not None:
                    start, end = byte_range
                    status = 206
                    w.headers.set('Content-Range', 'bytes %s-%s/%s' % (start, end, size))

            length = end - start + 1
            w.headers.set('Content-Type', mime_type or 'application/octet-stream')
            w.headers.set('Content-Length', str(length))
            await w.write_header(status)
            if req.method == 'HEAD':
                return

            f.seek(start)
            remaining = length
            while remaining > 0:
                chunk = f.read(min(FILE_CHUNK_SIZE, remaining))
                if not chunk:
                    break
                await w.write(chunk)
                remaining -= len(chunk)

    @staticmethod
    def _not_modified(since:str, mtime:datetime.datetime) -> bool:
        try:
            since_dt = email.utils.parsedate_to_datetime(since)
        except (TypeError, ValueError, IndexError):
            return False
        if since_dt is None:
            return False
        if since_dt.tzinfo is None:
            since_dt = since_dt.replace(tzinfo=datetime.timezone.utc)
        return mtime <= since_dt

    @staticmethod
    def referer_path(req:HTTPRequest) -> str:
        """The decoded path of the referring page, with the same-origin prefix removed"""
        referer = req.referer
        origin = req.headers.get('Origin', '')
        if origin and referer.startswith(origin):
            referer = referer[len(origin):]
        path = urllib.parse.urlsplit(referer).path
        return urllib.parse.unquote(path) or '/'

    async def upload(self, w:ResponseWriter, req:HTTPRequest):
        if req.method != 'POST':
            w.headers.set('Allow', 'POST')
            return await http_error(w, 'Method Not Allowed', 405)

        form = None
        try:
            form = await parse_multipart(req, max_memory=self.max_upload_size, max_part_size=self.max_upload_size)
            dest_dir = self.resolve(self.referer_path(req))
            for part in form.get_files('files'):
                if part.size > self.max_upload_size:
                    raise PayloadTooLargeError(
                        'File %s is %s bytes, larger than the maximum of %s bytes' % (part.filename, part.size, self.max_upload_size)
                    )
                filename = sanitize_filename(part.filename)
                dst_path = os.path.join(dest_dir, filename)
                try:
                    with open(dst_path, 'wb') as dst:
                        await part.copy_to(dst)
                except OSError as e:
                    raise UploadIOError('Error writing file %s: %s' % (filename, e.strerror or e), innerexception=e)
                self.logger.info('Uploaded file: %s, file size: %s, MIME header: %s' % (dst_path, part.size, part.content_type))

        except PayloadTooLargeError as e:
            self.logger.info('Upload rejected: %s' % e.message)
            return await http_error(w, 'Request Entity Too Large', 413)
        except NotFoundError as e:
            return await http_error(w, '404 page not found', 404)
        except AsyfsError as e:
            return await self.fail(w, req, e)
        finally:
            if form is not None:
                form.close()

        await redirect(w, req.referer or '/', 302)

    async def healthz(self, w:ResponseWriter, req:HTTPRequest):
        uptime = self.health.uptime()
        if uptime is None:
            return await send_body(w, 503, b'', 'text/plain; charset=utf-8')
        body = ('uptime: %s\n' % format_duration(uptime.total_seconds())).encode('utf-8')
        await send_body(w, 200, body, 'text/plain; charset=utf-8')
