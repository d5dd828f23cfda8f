import time
import logging
import threading

from asyfs.utils.formatting import format_duration

REQUEST_ID_HEADER = 'X-Request-Id'
BASE36_ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


def to_base36(n:int) -> str:
    if n < 0:
        return '-' + to_base36(-n)
    if n == 0:
        return '0'
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(BASE36_ALPHABET[rem])
    return ''.join(reversed(digits))

def request_id_generator(clock = time.time_ns):
    """
    Returns a function producing correlation IDs: the base-36 form of a
    nanosecond clock reading, forced to be strictly increasing so two calls
    never return the same ID.
    """
    lock = threading.Lock()
    last = [0]

    def next_request_id() -> str:
        with lock:
            now = clock()
            if now <= last[0]:
                now = last[0] + 1
            last[0] = now
        return to_base36(now)

    return next_request_id


class Middlewares(list):
    """
    Ordered list of middlewares. A middleware takes a handler and returns a
    new handler wrapping it; the first element ends up outermost.
    """
    def apply(self, handler):
        for middleware in reversed(self):
            handler = middleware(handler)
        return handler


def tracing(next_request_id):
    """Propagates the incoming correlation ID or assigns a fresh one"""
    def middleware(handler):
        async def traced(w, req):
            request_id = req.headers.get(REQUEST_ID_HEADER, '')
            if not request_id:
                request_id = next_request_id()
            w.headers.set(REQUEST_ID_HEADER, request_id)
            await handler(w, req)
        return traced
    return middleware

def request_logging(logger:logging.Logger):
    """Emits one log line per request once the wrapped handler returned"""
    def middleware(handler):
        async def logged(w, req):
            start = time.perf_counter()
            try:
                await handler(w, req)
            finally:
                request_id = w.headers.get(REQUEST_ID_HEADER) or 'unknown'
                logger.info('%s %s %s %s %s %s' % (
                    request_id,
                    req.method,
                    req.path,
                    req.remote_addr,
                    req.user_agent,
                    format_duration(time.perf_counter() - start)
                ))
        return logged
    return middleware
