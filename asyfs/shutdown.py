import enum
import signal
import asyncio
import logging

from asyfs import logger as asyfslogger
from asyfs.config import DEFAULT_GRACE_PERIOD
from asyfs.errors import ShutdownTimeoutError
from asyfs.health import HealthState


class ServerState(enum.Enum):
    STARTING = 1
    READY = 2
    DRAINING = 3
    STOPPED = 4


class ShutdownCoordinator:
    """
    Ties the server lifecycle to the health state and to the termination signals.

    STARTING -> READY      mark_ready(), health set to the current time
    READY    -> DRAINING   SIGINT/SIGTERM or trigger(), health reset to 0
    DRAINING -> STOPPED    in-flight requests finished within the grace period

    If the grace period runs out `run` raises ShutdownTimeoutError.
    """
    def __init__(self, server, health:HealthState, grace_period:float = DEFAULT_GRACE_PERIOD, logger:logging.Logger = None, signals = (signal.SIGINT, signal.SIGTERM)):
        self.server = server
        self.health = health
        self.grace_period = grace_period
        self.logger = logger if logger is not None else asyfslogger
        self.signals = signals
        self.state = ServerState.STARTING
        self.received_signal = None
        self.shutdown_evt = asyncio.Event()
        self.stopped_evt = asyncio.Event()
        self.__loop = None
        self.__installed = []

    def install_signal_handlers(self):
        self.__loop = asyncio.get_running_loop()
        for sig in self.signals:
            try:
                self.__loop.add_signal_handler(sig, self.trigger, sig)
            except NotImplementedError:
                # no add_signal_handler on the windows event loops
                signal.signal(sig, lambda signum, frame: self.__loop.call_soon_threadsafe(self.trigger, signum))
            self.__installed.append(sig)

    def remove_signal_handlers(self):
        for sig in self.__installed:
            try:
                self.__loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)
        self.__installed = []

    def mark_ready(self):
        if self.state is not ServerState.STARTING:
            return
        self.health.mark_ready()
        self.state = ServerState.READY

    def trigger(self, sig = None):
        """Starts the shutdown sequence. Repeated calls are ignored."""
        if self.state in (ServerState.DRAINING, ServerState.STOPPED):
            return
        # health checks fail from now on, even while old requests finish
        self.health.mark_not_ready()
        self.state = ServerState.DRAINING
        self.received_signal = sig
        self.shutdown_evt.set()

    async def run(self):
        """
        Waits for the shutdown trigger, then drains the server.

        Raises:
            ShutdownTimeoutError: the server did not drain within the grace period
        """
        await self.shutdown_evt.wait()
        self.remove_signal_handlers()
        if self.received_signal is not None:
            self.logger.debug('Received signal %s' % signal.Signals(self.received_signal).name)
        self.logger.info('Server is shutting down...')

        try:
            await self.server.shutdown(self.grace_period)
        except ShutdownTimeoutError as e:
            self.logger.critical(e.message)
            await self.server.terminate()
            raise
        finally:
            self.state = ServerState.STOPPED
            self.stopped_evt.set()
