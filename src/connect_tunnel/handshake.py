from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .config import DEFAULT_USER_AGENT, ProxyAddress

logger = logging.getLogger("connect_tunnel.handshake")

CredentialProvider = Callable[[], Optional[Tuple[str, str]]]


class HandshakeError(Exception):
    """
    CONNECT negotiation failed for one client connection.
    status is the proxy's HTTP status code, or None when the proxy could not
    be reached or answered garbage.
    """

    def __init__(self, reason: str, status: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


@dataclass
class HandshakeResult:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    local_addr: Optional[Tuple]
    status_line: str
    elapsed_ms: float = 0.0


def static_credentials(username: str, password: str) -> CredentialProvider:
    creds = (username, password)

    def provider() -> Optional[Tuple[str, str]]:
        return creds

    return provider


def basic_auth_value(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def parse_status_line(status_line: str) -> Tuple[int, str]:
    """Return (code, "code reason") from an HTTP status line; code 0 if unparsable."""
    parts = status_line.split(" ", 2)
    if len(parts) >= 2 and parts[0].upper().startswith("HTTP/"):
        try:
            code = int(parts[1])
        except ValueError:
            return 0, status_line
        return code, " ".join(parts[1:])
    return 0, status_line


async def _close_quietly(w: asyncio.StreamWriter) -> None:
    try:
        w.close()
        await asyncio.wait_for(w.wait_closed(), timeout=1.0)
    except (OSError, asyncio.TimeoutError):
        pass


class ProxyHandshakeClient:
    """
    Opens raw byte streams through an HTTP proxy with the CONNECT method.
    One call per inbound client connection; no retries.
    """

    def __init__(
        self,
        proxy: ProxyAddress,
        credentials: Optional[CredentialProvider] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        dial_timeout: float = 10.0,
        io_timeout: float = 30.0,
        max_header_bytes: int = 64 * 1024,
    ) -> None:
        self.proxy = proxy
        self.credentials = credentials
        self.user_agent = user_agent
        self.dial_timeout = float(dial_timeout)
        self.io_timeout = float(io_timeout)
        self.max_header_bytes = int(max_header_bytes)

    def _request(self, host: str, port: int) -> bytes:
        lines = [
            f"CONNECT {host}:{port} HTTP/1.1",
            f"Host: {host}:{port}",
        ]
        if self.user_agent:
            lines.append(f"User-Agent: {self.user_agent}")
        creds = self.credentials() if self.credentials else None
        if creds:
            lines.append(f"Proxy-Authorization: {basic_auth_value(*creds)}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin1")

    async def connect(self, host: str, port: int) -> HandshakeResult:
        t0 = time.monotonic()
        try:
            r, w = await asyncio.wait_for(
                asyncio.open_connection(host=self.proxy.host, port=self.proxy.port),
                timeout=self.dial_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HandshakeError(f"proxy {self.proxy} connect timed out") from e
        except OSError as e:
            raise HandshakeError(f"proxy {self.proxy} unreachable: {e}") from e

        try:
            w.write(self._request(host, int(port)))
            await asyncio.wait_for(w.drain(), timeout=self.io_timeout)

            status_line = await asyncio.wait_for(r.readline(), timeout=self.io_timeout)
            if not status_line:
                raise HandshakeError("proxy closed the connection without a reply")
            status = status_line.decode("latin1", "replace").strip()
            code, reason = parse_status_line(status)
            if code == 0:
                raise HandshakeError(f"malformed proxy reply {status[:128]!r}")

            total = len(status_line)
            while True:
                line = await asyncio.wait_for(r.readline(), timeout=self.io_timeout)
                total += len(line)
                if total > self.max_header_bytes:
                    raise HandshakeError("proxy reply headers too large", status=code)
                if not line or line in (b"\r\n", b"\n"):
                    break
        except HandshakeError:
            await _close_quietly(w)
            raise
        except asyncio.CancelledError:
            w.close()
            raise
        except asyncio.TimeoutError as e:
            await _close_quietly(w)
            raise HandshakeError(f"proxy {self.proxy} timed out during CONNECT") from e
        except (OSError, ValueError) as e:
            # ValueError: StreamReader line limit exceeded
            await _close_quietly(w)
            raise HandshakeError(f"proxy {self.proxy} error during CONNECT: {e}") from e

        if not 200 <= code < 300:
            await _close_quietly(w)
            raise HandshakeError(reason, status=code)

        elapsed_ms = (time.monotonic() - t0) * 1000.0
        logger.debug("CONNECT %s:%s via %s -> %s (%.0f ms)", host, port, self.proxy, reason, elapsed_ms)
        return HandshakeResult(
            reader=r,
            writer=w,
            local_addr=w.get_extra_info("sockname"),
            status_line=reason,
            elapsed_ms=elapsed_ms,
        )
