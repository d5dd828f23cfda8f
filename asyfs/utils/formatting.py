
BYTE_UNITS = 'kMGTPE'

def format_bytes(size:int) -> str:
    """
    Formats a byte count to a human readable string using decimal (base-1000) units.

    Args:
        size (int): Number of bytes, must not be negative

    Returns:
        str: e.g. "999 B", "1.0 kB", "12.3 MB"
    """
    if size < 0:
        raise ValueError('Byte count must not be negative, got %s' % size)
    unit = 1000
    if size < unit:
        return '%d B' % size
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return '%.1f %sB' % (size / div, BYTE_UNITS[exp])

def _trim(value:float) -> str:
    return ('%.3f' % value).rstrip('0').rstrip('.')

def format_duration(seconds:float) -> str:
    """
    Formats a duration given in seconds in the compact "1h2m3.5s" / "1.5ms" / "250µs" style.
    """
    ns = int(round(seconds * 1e9))
    if ns == 0:
        return '0s'
    sign = ''
    if ns < 0:
        sign = '-'
        ns = -ns

    if ns < 1000:
        return '%s%dns' % (sign, ns)
    if ns < 1000**2:
        return '%s%sµs' % (sign, _trim(ns / 1e3))
    if ns < 1000**3:
        return '%s%sms' % (sign, _trim(ns / 1e6))

    hours, rem = divmod(ns, 3600 * 1000**3)
    minutes, rem = divmod(rem, 60 * 1000**3)
    res = sign
    if hours:
        res += '%dh' % hours
    if hours or minutes:
        res += '%dm' % minutes
    return res + '%ss' % _trim(rem / 1e9)
