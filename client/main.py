"""
Console entry point for the chat client.
Connect with a username, print messages as they arrive and send each typed
line to the room.

With --serve the client also hosts the room in-process, ticking a local Host
on a background thread, and joins it.

Commands:
    /conn          show the server we are connected to
    /quit, /exit   leave
    text @user     send "text" to user only
"""
import argparse
import sys
import threading
import time

import structlog

from common.config import settings
from common.logging import setup_logging
from server.host import Host
from .net import AgentState, ClientAgent

logger = structlog.get_logger()


def handle_input(agent: ClientAgent, line: str) -> bool:
    '''
    Act on one typed line.
    Input:
        - agent: the connected client
        - line: raw console input
    Output: False when the user asked to leave
    '''
    line = line.strip()
    if not line:
        return True

    if line in ("/quit", "/exit"):
        return False

    if line in ("/conn", "/connection"):
        print(f"Connected to: {agent.current_endpoint_info()}")
        return True

    if "@" in line:
        # "hello there @bob" -> direct message to bob
        text, _, target = line.rpartition("@")
        result = agent.submit_directed_text(text.rstrip(), target.strip())
    else:
        result = agent.submit_outbound_text(line)

    if not result.ok:
        print(f"! {result.error.message}")
    return True


class LocalServer:
    ''' A Host owned by the client process, updated on a background thread '''

    def __init__(self, host: Host):
        self.host = host
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True)

    @property
    def endpoint(self):
        return self.host.endpoint

    def start(self) -> "LocalServer":
        self._thread.start()
        logger.info("local_server_started", address=self.host.address, port=self.host.port)
        return self

    def stop(self) -> None:
        ''' Stop ticking and close the host. Idempotent. '''
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()
        self.host.close()

    def _loop(self):
        interval = settings.poll_interval_ms / 1000.0
        while not self._stop.is_set():
            self.host.update()
            time.sleep(interval)


def build_parser() -> argparse.ArgumentParser:
    # Parse command line arguments (host, port and username)
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default=settings.client_host, help="Server host address")
    ap.add_argument("--port", type=int, default=settings.server_port, help="Server port")
    ap.add_argument("--username", default=settings.default_username, help="Name shown to other users")
    ap.add_argument("--serve", "--listen", action="store_true",
                    help="Host the room in this process on --host/--port and join it")
    return ap


def main():
    args = build_parser().parse_args()

    # log to file only so log lines do not mix with the conversation
    setup_logging("client", to_console=False)

    local = None
    host, port = args.host, args.port
    if args.serve:
        local = LocalServer(Host.initialize(args.host, args.port)).start()
        host, port = local.endpoint
        print(f"Hosting on {host}:{port}")

    agent = ClientAgent.initialize(args.username)
    agent.on_message = lambda message: print(message)

    try:
        result = agent.connect(host, port)
        if not result.ok:
            print(f"Could not connect: {result.error.message}")
            sys.exit(1)

        print(f"Connected as user: {args.username}")
        with agent:
            for line in sys.stdin:
                if agent.state is AgentState.DISCONNECTED:
                    print("Disconnected.")
                    break
                if not handle_input(agent, line):
                    break
    finally:
        if local is not None:
            local.stop()


if __name__ == "__main__":
    main()
