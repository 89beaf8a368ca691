from __future__ import annotations

import asyncio
import socket
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class Behaviour:
    status: str = "200 Connection Established"
    # echo: send back whatever arrives; close: send greeting then hang up
    mode: str = "echo"
    delay: float = 0.0
    greeting: bytes = b""


@dataclass
class SeenRequest:
    line: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return self.line.split(" ")[1]


class FakeProxy:
    """
    Minimal CONNECT proxy for tests. After a 2xx reply it plays the
    destination itself instead of dialing out.
    """

    def __init__(self, default: Optional[Behaviour] = None, per_target: Optional[Dict[str, Behaviour]] = None) -> None:
        self.default = default or Behaviour()
        self.per_target = dict(per_target or {})
        self.requests: List[SeenRequest] = []
        self.received: Dict[str, bytearray] = {}
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []

    @property
    def port(self) -> int:
        assert self._server is not None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> "FakeProxy":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for w in self._writers:
            w.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        self._server = None

    async def __aenter__(self) -> "FakeProxy":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def _handle(self, r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        self._writers.append(w)
        try:
            line = (await r.readline()).decode("latin1").rstrip("\r\n")
            if not line:
                return
            req = SeenRequest(line=line)
            while True:
                h = await r.readline()
                if not h or h in (b"\r\n", b"\n"):
                    break
                k, v = h.decode("latin1").rstrip("\r\n").split(":", 1)
                req.headers[k.strip().lower()] = v.strip()
            self.requests.append(req)

            b = self.per_target.get(req.target, self.default)
            if b.delay:
                await asyncio.sleep(b.delay)
            w.write(f"HTTP/1.1 {b.status}\r\nProxy-Agent: fake\r\n\r\n".encode("latin1") + b.greeting)
            await w.drain()
            if not b.status.startswith("2"):
                return
            sink = self.received.setdefault(req.target, bytearray())
            if b.mode == "close":
                return
            while True:
                data = await r.read(4096)
                if not data:
                    break
                sink.extend(data)
                w.write(data)
                await w.drain()
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            w.close()


def unused_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_until(pred, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        await asyncio.sleep(interval)
    return bool(pred())


async def read_exactly(r: asyncio.StreamReader, n: int, timeout: float = 3.0) -> bytes:
    return await asyncio.wait_for(r.readexactly(n), timeout=timeout)
