"""
Dedicated server: hosts a chat room and ticks it until interrupted.
"""
import argparse
import time

import structlog

from common.config import settings
from common.logging import setup_logging
from server.host import Host

logger = structlog.get_logger()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default=settings.server_host, help="Address to listen on")
    ap.add_argument("--port", type=int, default=settings.server_port, help="Port to listen on")
    args = ap.parse_args()

    setup_logging("server")
    interval = settings.poll_interval_ms / 1000.0

    with Host.initialize(args.host, args.port) as host:
        print(f"Server listening on {host.address}:{host.port}")
        try:
            while True:
                host.update()
                time.sleep(interval)   # take it easy on the CPU between ticks
        except KeyboardInterrupt:
            logger.info("server_shutdown_requested", users=host.users())


if __name__ == "__main__":
    main()
