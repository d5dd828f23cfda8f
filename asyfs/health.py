import time
import threading
import datetime


class HealthState:
    """
    Process-wide readiness cell. Holds the nanosecond timestamp of the moment
    the server became ready, or 0 when it is not ready (starting or draining).
    """
    def __init__(self):
        self.__lock = threading.Lock()
        self.__value = 0

    def load(self) -> int:
        with self.__lock:
            return self.__value

    def store(self, value:int):
        with self.__lock:
            self.__value = value

    def mark_ready(self, ts:int = None):
        if ts is None:
            ts = time.time_ns()
        self.store(ts)

    def mark_not_ready(self):
        self.store(0)

    def is_ready(self) -> bool:
        return self.load() != 0

    def uptime(self) -> datetime.timedelta:
        """Returns the time elapsed since the server became ready, None if not ready"""
        value = self.load()
        if value == 0:
            return None
        return datetime.timedelta(microseconds=(time.time_ns() - value) / 1000)
