import os
import sys
import asyncio
import logging
import argparse

from asyfs import logger
from asyfs._version import __version__
from asyfs.config import ServerConfig, DEFAULT_ROOT_DIR, DEFAULT_BIND_ADDR, DEFAULT_PORT, DEFAULT_MAX_UPLOAD_SIZE
from asyfs.controller import Controller
from asyfs.errors import ShutdownTimeoutError
from asyfs.health import HealthState
from asyfs.protocol.httpserver import HTTPServer
from asyfs.shutdown import ShutdownCoordinator


async def run_server(config:ServerConfig, log:logging.Logger = None, health:HealthState = None):
    """
    Runs the file server until a termination signal arrives and the server drained.

    Raises:
        OSError: the listener could not be bound
        ShutdownTimeoutError: in-flight requests outlived the grace period
    """
    if log is None:
        log = logger
    if health is None:
        health = HealthState()

    controller = Controller(config.root_dir, config.max_upload_size, logger=log, health=health)
    server = HTTPServer(controller.handler(), config, logger=log, next_request_id=controller.next_request_id)
    coordinator = ShutdownCoordinator(server, health, grace_period=config.grace_period, logger=log)
    coordinator.install_signal_handlers()
    try:
        await server.start()
    except Exception:
        coordinator.remove_signal_handlers()
        raise

    coordinator.mark_ready()
    log.info('Server is ready to handle requests at %r' % ('%s:%s' % (config.bind_addr, server.port)))
    await coordinator.run()
    log.info('Server exiting')

def main():
    parser = argparse.ArgumentParser(
        description='asyfs - browse, download and upload files of a directory tree over HTTP',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s                                   # Serve /tmp/asyfs on 0.0.0.0:2690
  %(prog)s --root-dir /srv/share --port 8080 # Serve another directory on another port
  %(prog)s --max-size 104857600              # Allow uploads up to 100 MB
        ''')
    parser.add_argument('--root-dir', default=DEFAULT_ROOT_DIR, help='root directory (default: %(default)s)')
    parser.add_argument('--bind-addr', default=DEFAULT_BIND_ADDR, help='IP address to bind (default: %(default)s)')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='port number to listen on (default: %(default)s)')
    parser.add_argument('--max-size', type=int, default=DEFAULT_MAX_UPLOAD_SIZE, help='max size of uploaded file in bytes (default: %(default)s)')
    parser.add_argument('-d', '--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('-v', '--version', action='version', version='asyfs %s' % __version__)
    args = parser.parse_args()

    if args.debug is True:
        logger.setLevel(logging.DEBUG)

    try:
        config = ServerConfig(root_dir=args.root_dir, bind_addr=args.bind_addr, port=args.port, max_upload_size=args.max_size)
    except ValueError as e:
        logger.error('Invalid configuration: %s' % e)
        sys.exit(1)

    logger.info('Server is starting...')
    try:
        os.makedirs(config.root_dir, exist_ok=True)
    except OSError as e:
        logger.error('Unable to create root directory: %s' % e)
        sys.exit(1)

    try:
        asyncio.run(run_server(config))
    except ShutdownTimeoutError:
        # already logged by the coordinator
        sys.exit(1)
    except OSError as e:
        logger.error('Listen: %s' % e)
        sys.exit(1)

if __name__ == '__main__':
    main()
