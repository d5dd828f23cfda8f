import re
import asyncio
import tempfile

from asyfs.errors import BadRequestError

MAX_PART_HEADER_SIZE = 8192
_PARAM_RE = re.compile(r';\s*([A-Za-z0-9_\-\*\.]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)')


def parse_header_params(value:str):
    """
    Splits a header value like `form-data; name="files"; filename="a.txt"`
    into the main value and a dict of its (lowercased) parameters.
    """
    main, _, _ = value.partition(';')
    params = {}
    for m in _PARAM_RE.finditer(value[len(main):]):
        pvalue = m.group(2).strip()
        if len(pvalue) >= 2 and pvalue[0] == '"' and pvalue[-1] == '"':
            pvalue = re.sub(r'\\(.)', r'\1', pvalue[1:-1])
        params[m.group(1).lower()] = pvalue
    return main.strip().lower(), params

def get_boundary(content_type:str) -> bytes:
    """Returns the multipart boundary from a Content-Type header value"""
    ctype, params = parse_header_params(content_type or '')
    if ctype not in ('multipart/form-data', 'multipart/mixed'):
        raise BadRequestError("request Content-Type isn't multipart/form-data")
    boundary = params.get('boundary', '')
    if not boundary or len(boundary) > 70:
        raise BadRequestError('no multipart boundary param in Content-Type')
    return boundary.encode('latin-1')


class FormPart:
    """
    One part of a multipart form. The content is spooled in memory up to
    `spool_size` bytes, then in a temporary file. Parts larger than
    `max_size` are only measured, their content is dropped.
    """
    def __init__(self, name:str, filename:str = None, content_type:str = None, headers = None, spool_size:int = 1024*1024, max_size:int = None):
        self.name = name
        self.filename = filename
        self.content_type = content_type
        self.headers = headers if headers is not None else {}
        self.max_size = max_size
        self.size = 0
        self.spool_size = max(1, spool_size)
        self.file = tempfile.SpooledTemporaryFile(max_size=self.spool_size)

    @property
    def is_file(self):
        return self.filename is not None

    @property
    def oversized(self):
        return self.max_size is not None and self.size > self.max_size

    @property
    def in_memory(self):
        return self.file is not None and not self.file._rolled

    def write(self, data:bytes):
        if not data:
            return
        self.size += len(data)
        if self.oversized:
            if self.file is not None:
                self.file.close()
                self.file = None
            return
        self.file.write(data)

    def open(self):
        if self.file is None:
            raise ValueError('Content of part %r was dropped' % self.name)
        self.file.seek(0)
        return self.file

    async def copy_to(self, fileobj, chunk_size:int = 64*1024):
        """Copies the content to `fileobj`, yielding to the event loop after every chunk"""
        src = self.open()
        while True:
            chunk = src.read(chunk_size)
            if not chunk:
                break
            fileobj.write(chunk)
            await asyncio.sleep(0)

    def close(self):
        if self.file is not None:
            self.file.close()
            self.file = None

    def __repr__(self):
        return 'FormPart(name=%r, filename=%r, size=%r)' % (self.name, self.filename, self.size)


class MultipartForm:
    def __init__(self):
        self.parts = []

    def get_files(self, name:str):
        return [p for p in self.parts if p.is_file and p.name == name]

    def close(self):
        for p in self.parts:
            p.close()


class MultipartStreamProcessor:
    """
    Incremental multipart/form-data parser. Boundaries split across chunk
    borders are handled by keeping a short tail of the buffer.

    Args:
        boundary (bytes): The boundary from the Content-Type header
        max_memory (int): In-memory budget of the whole form, the rest spills to temporary files
        max_part_size (int): Parts above this size are measured but not stored (None = no limit)
    """
    def __init__(self, boundary:bytes, max_memory:int = 16 << 20, max_part_size:int = None):
        self.delimiter = b'--' + boundary
        self.delimiter_with_crlf = b'\r\n' + self.delimiter
        self.max_memory = max_memory
        self.memory_left = max_memory
        self.max_part_size = max_part_size

        self.buffer = b''
        self.state = 'preamble'  # 'preamble', 'after_boundary', 'headers', 'body', 'done'
        self.current_part = None
        self.form = MultipartForm()

    @property
    def done(self):
        return self.state == 'done'

    def feed(self, chunk:bytes):
        """Processes the next chunk of the request body"""
        if self.state == 'done':
            return
        self.buffer += chunk
        while True:
            if self.state == 'preamble':
                if not self._process_preamble():
                    break
            elif self.state == 'after_boundary':
                if not self._process_after_boundary():
                    break
            elif self.state == 'headers':
                if not self._process_headers():
                    break
            elif self.state == 'body':
                if not self._process_body():
                    break
            else:
                # epilogue is ignored
                self.buffer = b''
                break

    def _process_preamble(self):
        pos = self.buffer.find(self.delimiter)
        if pos == -1:
            # keep a possible partial delimiter
            keep = len(self.delimiter) - 1
            if len(self.buffer) > keep:
                self.buffer = self.buffer[-keep:]
            return False
        self.buffer = self.buffer[pos + len(self.delimiter):]
        self.state = 'after_boundary'
        return True

    def _process_after_boundary(self):
        # transport padding is allowed between the delimiter and the CRLF
        stripped = self.buffer.lstrip(b' \t')
        if len(stripped) < 2:
            return False
        if stripped.startswith(b'--'):
            self.state = 'done'
            self.buffer = b''
            return False
        if not stripped.startswith(b'\r\n'):
            raise BadRequestError('multipart: malformed boundary line')
        self.buffer = stripped[2:]
        self.state = 'headers'
        return True

    def _process_headers(self):
        if self.buffer.startswith(b'\r\n'):
            header_section = b''
            self.buffer = self.buffer[2:]
        else:
            header_end = self.buffer.find(b'\r\n\r\n')
            if header_end == -1:
                if len(self.buffer) > MAX_PART_HEADER_SIZE:
                    raise BadRequestError('multipart: part headers too long')
                return False
            header_section = self.buffer[:header_end]
            self.buffer = self.buffer[header_end + 4:]

        if len(header_section) > MAX_PART_HEADER_SIZE:
            raise BadRequestError('multipart: part headers too long')
        try:
            headers_text = header_section.decode('utf-8')
        except UnicodeDecodeError as e:
            raise BadRequestError('multipart: invalid header encoding: %s' % e)

        headers = {}
        for line in headers_text.split('\r\n'):
            if not line.strip():
                continue
            name, sep, value = line.partition(':')
            if not sep:
                raise BadRequestError('multipart: malformed part header %r' % line)
            headers[name.strip().lower()] = value.strip()

        _, params = parse_header_params(headers.get('content-disposition', ''))
        self.current_part = FormPart(
            params.get('name', ''),
            filename = params.get('filename'),
            content_type = headers.get('content-type'),
            headers = headers,
            spool_size = self.memory_left,
            max_size = self.max_part_size,
        )
        self.form.parts.append(self.current_part)
        self.state = 'body'
        return True

    def _process_body(self):
        pos = self.buffer.find(self.delimiter_with_crlf)
        if pos == -1:
            keep = len(self.delimiter_with_crlf) - 1
            if len(self.buffer) > keep:
                self.current_part.write(self.buffer[:-keep])
                self.buffer = self.buffer[-keep:]
            return False

        self.current_part.write(self.buffer[:pos])
        self._finalize_current_part()
        self.buffer = self.buffer[pos + len(self.delimiter_with_crlf):]
        self.state = 'after_boundary'
        return True

    def _finalize_current_part(self):
        part = self.current_part
        self.current_part = None
        if part is None:
            return
        if part.in_memory:
            self.memory_left -= part.size
        if self.memory_left < 1:
            self.memory_left = 1

    def finalize(self) -> MultipartForm:
        """Returns the parsed form. Raises BadRequestError when the body ended early."""
        if self.state != 'done':
            self.form.close()
            raise BadRequestError('multipart: NextPart: EOF')
        return self.form


async def parse_multipart(request, max_memory:int, max_part_size:int = None) -> MultipartForm:
    """Reads the body of `request` and parses it as a multipart form"""
    boundary = get_boundary(request.content_type)
    processor = MultipartStreamProcessor(boundary, max_memory = max_memory, max_part_size = max_part_size)
    try:
        async for chunk in request.body_chunks():
            processor.feed(chunk)
    except Exception:
        processor.form.close()
        raise
    return processor.finalize()
