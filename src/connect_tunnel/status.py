from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("connect_tunnel.status")
events_logger = logging.getLogger("connect_tunnel.events")

__all__ = [
    "EventLog",
    "RelayHealth",
    "humanize_bytes",
    "humanize_duration",
    "status_ticker",
]


_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def humanize_bytes(n) -> str:
    """Relay byte counters as 512B / 2.0KB / 1.5MB."""
    try:
        size = float(int(n))
    except (TypeError, ValueError):
        return "0B"
    for unit in _BYTE_UNITS[:-1]:
        if size < 1024.0:
            break
        size /= 1024.0
    else:
        unit = _BYTE_UNITS[-1]
    return f"{int(size)}{unit}" if unit == "B" else f"{size:.1f}{unit}"


def humanize_duration(seconds: float) -> str:
    """Uptime as 1h2m3s; leading zero fields are dropped."""
    total = max(0, int(round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    out = f"{secs}s"
    if hours or minutes:
        out = f"{minutes}m{out}"
    if hours:
        out = f"{hours}h{out}"
    return out


@dataclass
class RelayHealth:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started: float = field(default_factory=time.time)
    listeners: int = 0
    requested: int = 0
    established: int = 0
    failed: int = 0
    closed: int = 0
    active: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    last_failure: str = ""


class EventLog:
    """
    Event sink for TunnelRelay.

    verbosity 0 logs nothing, 1 logs connection lifecycle events, 2 also
    logs every relayed chunk. Counters in health are kept at every level.
    """

    def __init__(self, verbosity: int = 0, health: RelayHealth | None = None) -> None:
        self.verbosity = max(0, int(verbosity))
        self.health = health if health is not None else RelayHealth()

    def __call__(self, evt: dict) -> None:
        if not isinstance(evt, dict):
            return
        typ = evt.get("type")
        self._account(typ, evt)
        if self.verbosity >= 1:
            self._log(typ, evt)

    def _account(self, typ, evt: dict) -> None:
        h = self.health
        with h.lock:
            if typ == "listening":
                h.listeners += 1
            elif typ == "requested":
                h.requested += 1
            elif typ == "established":
                h.established += 1
                h.active += 1
            elif typ == "failed":
                h.failed += 1
                h.last_failure = f"{evt.get('dest')}: {evt.get('reason')}"
            elif typ == "closed":
                h.closed += 1
                h.active = max(0, h.active - 1)
                h.bytes_sent += int(evt.get("sent") or 0)
                h.bytes_received += int(evt.get("received") or 0)
            # transfer events are only logged

    def _log(self, typ, evt: dict) -> None:
        if typ == "listening":
            events_logger.info("listening on %s for %s", evt.get("addr"), evt.get("dest"))
        elif typ == "requested":
            events_logger.info("request from %s for %s", evt.get("client"), evt.get("dest"))
        elif typ == "established":
            events_logger.info(
                "tunnel #%s %s <-> %s established via %s (%s)",
                evt.get("pair"), evt.get("client"), evt.get("dest"), evt.get("local"), evt.get("status"),
            )
        elif typ == "failed":
            events_logger.warning(
                "CONNECT to %s for %s failed: %s",
                evt.get("dest"), evt.get("client"), evt.get("reason"),
            )
        elif typ == "closed":
            events_logger.info(
                "tunnel #%s %s <-> %s closed (%s, sent=%s received=%s)",
                evt.get("pair"), evt.get("client"), evt.get("dest"), evt.get("reason"),
                humanize_bytes(evt.get("sent") or 0), humanize_bytes(evt.get("received") or 0),
            )
        elif typ == "transfer" and self.verbosity >= 2:
            events_logger.info(
                "tunnel #%s %s %d bytes (%s)",
                evt.get("pair"), evt.get("direction"), int(evt.get("bytes") or 0), evt.get("dest"),
            )


def format_status(health: RelayHealth, now: float | None = None) -> str:
    now = time.time() if now is None else now
    with health.lock:
        listeners = health.listeners
        active = health.active
        established = health.established
        failed = health.failed
        sent = health.bytes_sent
        received = health.bytes_received
        started = health.started
        last_failure = health.last_failure

    state = (Fore.GREEN + f"UP listeners={listeners}" + Style.RESET_ALL) if listeners else (Fore.RED + "DOWN" + Style.RESET_ALL)
    msg = (
        f"{state} uptime={humanize_duration(now - started)} "
        f"| {Fore.CYAN}tunnels{Style.RESET_ALL}=active={active} total={established} "
        f"| {Fore.YELLOW}failed{Style.RESET_ALL}={failed} "
        f"| {Fore.MAGENTA}bytes{Style.RESET_ALL}=sent={humanize_bytes(sent)} received={humanize_bytes(received)}"
    )
    if failed and last_failure:
        msg += f" | last_failure={last_failure}"
    return msg


def status_ticker(health: RelayHealth, stop_evt: threading.Event, interval_s: float) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        logger.info(format_status(health))
