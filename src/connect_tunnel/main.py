from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

from . import __version__
from .config import ConfigError, load_config_from_env
from .relay import run_tunnel_relay
from .status import EventLog, RelayHealth, status_ticker

logger = logging.getLogger("connect_tunnel.main")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("CONNECT_TUNNEL_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > defaults.
    """
    ap = argparse.ArgumentParser(
        prog="connect-tunnel",
        description="Create TCP tunnels through an HTTP proxy using the CONNECT method.",
    )
    ap.add_argument("-T", "--tunnel", dest="tunnels", action="append", metavar="port:host:hostport",
                    help="Local port to listen on and destination to reach (repeatable)")
    ap.add_argument("-p", "--proxy", dest="proxy", metavar="host[:port]",
                    help="HTTP proxy (port defaults to 8080; falls back to HTTP_PROXY)")
    ap.add_argument("-P", "--proxy-authentication", dest="proxy_auth", metavar="user:password",
                    help="Credentials for the proxy (Basic authentication)")
    ap.add_argument("-U", "--user-agent", dest="user_agent", help="User-Agent sent with CONNECT requests")
    ap.add_argument("-L", "--local-only", dest="local_only", action="store_true", default=None,
                    help="Bind the tunnel ports on 127.0.0.1 only")
    ap.add_argument("-v", "--verbose", dest="verbose", action="count",
                    help="Log connection events; twice to also log transferred chunks")
    ap.add_argument("-s", "--status-interval", dest="status_interval", type=float,
                    help="Seconds between status lines (0 disables)")
    ap.add_argument("--dial-timeout", dest="dial_timeout", type=float, help="Seconds to wait for the proxy TCP connect")
    ap.add_argument("--io-timeout", dest="io_timeout", type=float, help="Seconds to wait for the proxy CONNECT reply")
    ap.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    return ap.parse_args(argv)


def _apply_cli_to_env(args: argparse.Namespace) -> None:
    if args.tunnels:
        os.environ["CONNECT_TUNNEL_TUNNELS"] = ",".join(args.tunnels)
    cli_to_env = {
        "proxy": "CONNECT_TUNNEL_PROXY",
        "proxy_auth": "CONNECT_TUNNEL_PROXY_AUTH",
        "user_agent": "CONNECT_TUNNEL_USER_AGENT",
        "verbose": "CONNECT_TUNNEL_VERBOSE",
        "status_interval": "CONNECT_TUNNEL_STATUS_INTERVAL",
        "dial_timeout": "CONNECT_TUNNEL_DIAL_TIMEOUT",
        "io_timeout": "CONNECT_TUNNEL_IO_TIMEOUT",
    }
    for attr, env_key in cli_to_env.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))
    if args.local_only:
        os.environ["CONNECT_TUNNEL_LOCAL_ONLY"] = "1"


def main(argv: list[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    _apply_cli_to_env(args)

    try:
        cfg = load_config_from_env()
    except ConfigError as e:
        print(f"connect-tunnel: {e}", file=sys.stderr)
        return 1

    logging.getLogger("connect_tunnel").setLevel(cfg.log_level)
    logger.debug(
        "config: proxy=%s auth=%s local_only=%s verbosity=%d tunnels=%s",
        cfg.proxy, bool(cfg.credentials), cfg.local_only, cfg.verbosity,
        ", ".join(str(t) for t in cfg.tunnels),
    )

    stop = threading.Event()

    def handle_signal(signum, _frame):
        logger.debug("signal %s received, shutting down", signum)
        stop.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)

    health = RelayHealth()
    sink = EventLog(cfg.verbosity, health)
    if cfg.status_interval > 0:
        ticker_t = threading.Thread(
            target=status_ticker, name="status-ticker", args=(health, stop, cfg.status_interval), daemon=True
        )
        ticker_t.start()

    try:
        run_tunnel_relay(stop, cfg, emit=sink)
    except ConfigError as e:
        stop.set()
        print(f"connect-tunnel: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
