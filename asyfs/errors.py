

class AsyfsError(Exception):
    """Base class of every error that maps to an HTTP response"""
    status_code = 500

    def __init__(self, message:str = None, innerexception:Exception = None):
        self.innerexception = innerexception
        if message is None:
            message = str(innerexception) if innerexception is not None else self.__class__.__name__
        self.message = message
        super().__init__(self.message)


class NotFoundError(AsyfsError):
    status_code = 404


class BadRequestError(AsyfsError):
    status_code = 400


class DirectoryReadError(AsyfsError):
    status_code = 500


class PayloadTooLargeError(AsyfsError):
    status_code = 413


class UploadIOError(AsyfsError):
    status_code = 500


class ShutdownTimeoutError(AsyfsError):
    def __init__(self, grace_period:float, pending:int = 0):
        self.grace_period = grace_period
        self.pending = pending
        super().__init__('Could not gracefully shutdown the server: %s request(s) still running after %ss' % (pending, grace_period))


class RangeNotSatisfiableError(AsyfsError):
    status_code = 416
