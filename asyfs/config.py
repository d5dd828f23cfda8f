
DEFAULT_ROOT_DIR = '/tmp/asyfs'
DEFAULT_BIND_ADDR = '0.0.0.0'
DEFAULT_PORT = 2690
DEFAULT_MAX_UPLOAD_SIZE = 16 << 20 # 16MiB
DEFAULT_READ_TIMEOUT = 10
DEFAULT_WRITE_TIMEOUT = 10
DEFAULT_GRACE_PERIOD = 5


class ServerConfig:
    """
    Settings of one daemon instance. Built once at startup, never changed afterwards.

    Args:
        root_dir (str): Directory tree to expose
        bind_addr (str): IP address to bind
        port (int): Port number to listen on (0 picks a free port)
        max_upload_size (int): Maximum size of an uploaded file in bytes
        read_timeout (float): Seconds allowed for each socket read
        write_timeout (float): Seconds allowed for each socket write
        grace_period (float): Seconds in-flight requests may run after a shutdown signal
    """
    def __init__(self, root_dir:str = DEFAULT_ROOT_DIR, bind_addr:str = DEFAULT_BIND_ADDR, port:int = DEFAULT_PORT,
                 max_upload_size:int = DEFAULT_MAX_UPLOAD_SIZE, read_timeout:float = DEFAULT_READ_TIMEOUT,
                 write_timeout:float = DEFAULT_WRITE_TIMEOUT, grace_period:float = DEFAULT_GRACE_PERIOD):
        if port < 0 or port > 65535:
            raise ValueError('Port must be between 0 and 65535, got %s' % port)
        if max_upload_size < 1:
            raise ValueError('max-size must be at least 1 byte, got %s' % max_upload_size)
        for name, value in (('read_timeout', read_timeout), ('write_timeout', write_timeout), ('grace_period', grace_period)):
            if value <= 0:
                raise ValueError('%s must be positive, got %s' % (name, value))

        self.root_dir = root_dir
        self.bind_addr = bind_addr
        self.port = port
        self.max_upload_size = max_upload_size
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.grace_period = grace_period

    @property
    def listen_addr(self):
        return '%s:%s' % (self.bind_addr, self.port)

    def __repr__(self):
        return 'ServerConfig(root_dir=%r, listen_addr=%r, max_upload_size=%r)' % (self.root_dir, self.listen_addr, self.max_upload_size)
