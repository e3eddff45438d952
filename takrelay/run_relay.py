import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from .console import OperatorConsole
from .node import DEFAULT_TICK, RelayServer

"""
run_relay.py: command-line entry point for the relay.

Usage:
    python -m takrelay.run_relay <portno_listen>

Environment:
    TAKRELAY_HOST   bind address (default 0.0.0.0, every IPv4 interface)
    TAKRELAY_TICK   seconds between shutdown checks (default 0.1)
"""

DEFAULT_HOST = "0.0.0.0"
BIND_ERROR = "ERROR: unable to bind(); the socket may already be in use or is in timeout"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="takrelay",
        description="CoT/TAK TCP relay: echoes every complete </event> message to all participants.",
    )
    p.add_argument("port", type=int, help="TCP port to listen on (portno_listen)")
    return p.parse_args(argv)


def tick_from_env() -> float:
    raw = os.environ.get("TAKRELAY_TICK")
    if not raw:
        return DEFAULT_TICK
    try:
        tick = float(raw)
    except ValueError:
        raise SystemExit(f"TAKRELAY_TICK must be a number, got {raw!r}")
    if tick <= 0:
        raise SystemExit("TAKRELAY_TICK must be positive")
    return tick


def install_signal_handlers(loop: asyncio.AbstractEventLoop, server: RelayServer) -> None:
    """SIGINT/SIGTERM request a graceful shutdown instead of a traceback."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; the console still works.
            pass


async def run_relay(port: int, host: str = DEFAULT_HOST, tick: float = DEFAULT_TICK,
                    interactive: bool = True) -> None:
    """Bind, attach operator controls, relay until shutdown."""
    server = RelayServer(host, port, tick=tick)
    try:
        await server.start()
    except OSError as exc:
        raise SystemExit(f"{BIND_ERROR} ({exc})") from exc

    loop = asyncio.get_running_loop()
    install_signal_handlers(loop, server)

    console = OperatorConsole(server)
    if interactive:
        print("Press 'Q' to exit program")
        console.attach(loop)
    try:
        await server.serve()
    except MemoryError as exc:
        raise SystemExit(f"FATAL: out of memory while buffering ({exc})") from exc
    finally:
        console.detach()


def main(argv: Optional[List[str]] = None) -> None:
    """Parse the port, read env overrides and run the relay."""
    args = parse_args(argv)
    host = os.environ.get("TAKRELAY_HOST") or DEFAULT_HOST
    tick = tick_from_env()
    asyncio.run(run_relay(args.port, host, tick, interactive=sys.stdin is not None))


if __name__ == "__main__":
    main()
