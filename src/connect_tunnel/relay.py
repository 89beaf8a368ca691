from __future__ import annotations

import asyncio
import functools
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import ConfigError, TunnelConfig, TunnelSpec
from .handshake import HandshakeError, ProxyHandshakeClient, static_credentials
from .pairing import CLIENT, PROXY, PairingTable

# Tunnel relay: one listener per tunnel spec, a CONNECT handshake per inbound
# client, then a byte pump in each direction until either side goes away.
# - Handshakes run in the client's own task; a stuck proxy never blocks
#   other tunnels or live relays.
# - Each pump awaits the peer's drain after every write, so a slow reader
#   pushes back on the sending side instead of growing buffers.
# - First EOF or error on either side tears down the whole pair at once.

logger = logging.getLogger("connect_tunnel.relay")
if not logger.handlers:
    logging.basicConfig(
        level=os.environ.get("CONNECT_TUNNEL_LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

BUFFER_SIZE = 4096
LOCAL_HOST = "127.0.0.1"
ANY_HOST = "0.0.0.0"


def format_addr(addr) -> str:
    if isinstance(addr, (tuple, list)) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) if addr else "-"


@dataclass
class ListeningEndpoint:
    spec: TunnelSpec
    server: asyncio.AbstractServer

    @property
    def address(self) -> Optional[Tuple]:
        socks = self.server.sockets or []
        return socks[0].getsockname() if socks else None


class TunnelRelay:
    """
    Relays local TCP connections through an HTTP proxy, one listener per
    TunnelSpec.

    emit receives event dicts: listening, requested, established, failed,
    closed, and (when log_transfers is on) transfer.
    """

    def __init__(
        self,
        tunnels: Iterable[TunnelSpec],
        handshake: ProxyHandshakeClient,
        local_only: bool = False,
        emit: Optional[Callable[[dict], None]] = None,
        bufsize: int = BUFFER_SIZE,
        log_transfers: bool = False,
    ) -> None:
        self.tunnels: List[TunnelSpec] = list(tunnels)
        self.handshake = handshake
        self.local_only = bool(local_only)
        self.emit = emit
        self.bufsize = max(1, int(bufsize))
        self.log_transfers = bool(log_transfers)
        self.table = PairingTable()
        self._endpoints: List[ListeningEndpoint] = []
        # pair_id -> the two pump tasks watching that pair
        self._watched: Dict[int, Tuple[asyncio.Task, asyncio.Task]] = {}
        self._client_tasks: Set[asyncio.Task] = set()
        self._stopping = False

    def _emit(self, evt: dict) -> None:
        if self.emit is None:
            return
        evt.setdefault("ts", time.time())
        try:
            self.emit(evt)
        except Exception:
            logger.debug("event sink failed for %s", evt.get("type"), exc_info=True)

    @property
    def endpoints(self) -> List[ListeningEndpoint]:
        return list(self._endpoints)

    def listen_addresses(self) -> List[Tuple[TunnelSpec, Optional[Tuple]]]:
        return [(ep.spec, ep.address) for ep in self._endpoints]

    def watched(self) -> Dict[int, Tuple[asyncio.Task, asyncio.Task]]:
        return dict(self._watched)

    async def start(self) -> None:
        """Bind every listener or none of them."""
        host = LOCAL_HOST if self.local_only else ANY_HOST
        self._stopping = False
        for spec in self.tunnels:
            try:
                srv = await asyncio.start_server(
                    functools.partial(self._handle_client, spec),
                    host,
                    spec.listen_port,
                    reuse_address=True,
                )
            except OSError as e:
                bound, self._endpoints = self._endpoints, []
                for ep in bound:
                    ep.server.close()
                for ep in bound:
                    try:
                        await asyncio.wait_for(ep.server.wait_closed(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
                raise ConfigError(f"cannot listen on {host}:{spec.listen_port}: {e.strerror or e}") from e
            self._endpoints.append(ListeningEndpoint(spec=spec, server=srv))

        for ep in self._endpoints:
            logger.debug("listening on %s for %s", format_addr(ep.address), ep.spec.dest)
            self._emit({
                "type": "listening",
                "addr": format_addr(ep.address),
                "port": ep.address[1] if ep.address else ep.spec.listen_port,
                "dest": ep.spec.dest,
            })

    async def stop(self) -> None:
        self._stopping = True
        servers = [ep.server for ep in self._endpoints]
        self._endpoints = []
        for srv in servers:
            srv.close()
        for pair_id in self.table.pair_ids():
            self._teardown(pair_id, "shutdown")
        tasks = list(self._client_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for srv in servers:
            try:
                await asyncio.wait_for(srv.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                pass

    async def serve_until(self, stop_evt: threading.Event, poll: float = 0.2) -> None:
        await self.start()
        try:
            while not stop_evt.is_set():
                await asyncio.sleep(poll)
        finally:
            await self.stop()

    async def _handle_client(
        self,
        spec: TunnelSpec,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        cur = asyncio.current_task()
        if cur is not None:
            self._client_tasks.add(cur)
        client_addr = writer.get_extra_info("peername")
        client = format_addr(client_addr)
        pair_id: Optional[int] = None
        try:
            self._emit({"type": "requested", "client": client, "dest": spec.dest, "port": spec.listen_port})
            try:
                res = await self.handshake.connect(spec.dest_host, spec.dest_port)
            except HandshakeError as e:
                self._emit({
                    "type": "failed",
                    "client": client,
                    "dest": spec.dest,
                    "reason": e.reason,
                    "status": e.status,
                })
                writer.close()
                return
            except BaseException:
                writer.close()
                raise

            if self._stopping:
                res.writer.close()
                writer.close()
                return

            pair_id = self.table.register(
                reader,
                writer,
                res.reader,
                res.writer,
                dest=spec.dest,
                client_addr=client_addr,
                client_local_addr=writer.get_extra_info("sockname"),
                proxy_local_addr=res.local_addr,
            )
            pumps = (
                asyncio.create_task(self._pump(pair_id, CLIENT)),
                asyncio.create_task(self._pump(pair_id, PROXY)),
            )
            self._watched[pair_id] = pumps
            self._emit({
                "type": "established",
                "pair": pair_id,
                "client": client,
                "dest": spec.dest,
                "local": format_addr(res.local_addr),
                "status": res.status_line,
            })
            await asyncio.wait(pumps)
        except asyncio.CancelledError:
            if pair_id is not None:
                self._teardown(pair_id, "cancelled")
            raise
        finally:
            if cur is not None:
                self._client_tasks.discard(cur)

    async def _pump(self, pair_id: int, side: str) -> None:
        halves = self.table.pair(pair_id)
        if halves is None:
            return
        src = halves[0] if side == CLIENT else halves[1]
        dst = self.table.peer_of(src.writer)
        direction = f"{src.side}->{dst.side}"
        try:
            while True:
                chunk = await src.reader.read(self.bufsize)
                if not chunk:
                    break
                src.bytes_read += len(chunk)
                if self.log_transfers:
                    self._emit({
                        "type": "transfer",
                        "pair": pair_id,
                        "direction": direction,
                        "bytes": len(chunk),
                        "dest": dst.remote_desc or src.remote_desc,
                    })
                dst.writer.write(chunk)
                await dst.writer.drain()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"{src.side} error: {e}"
        else:
            reason = f"{src.side} eof"
        self._teardown(pair_id, reason)

    def _teardown(self, pair_id: int, reason: str) -> None:
        """
        Remove the pair from the table and the watched set, stop the pumps
        and close both streams. No await happens here.
        """
        halves = self.table.unregister(pair_id)
        pumps = self._watched.pop(pair_id, ())
        if halves is None:
            return
        cur = asyncio.current_task()
        for t in pumps:
            if t is not cur and not t.done():
                t.cancel()
        client, proxy = halves
        for peer in (client, proxy):
            try:
                peer.writer.close()
            except Exception:
                logger.debug("close failed on %s side of pair %d", peer.side, pair_id, exc_info=True)
        self._emit({
            "type": "closed",
            "pair": pair_id,
            "client": format_addr(client.remote_addr),
            "dest": proxy.remote_desc,
            "sent": client.bytes_read,
            "received": proxy.bytes_read,
            "reason": reason,
        })


def build_relay(cfg: TunnelConfig, emit: Optional[Callable[[dict], None]] = None) -> TunnelRelay:
    credentials = static_credentials(*cfg.credentials) if cfg.credentials else None
    client = ProxyHandshakeClient(
        cfg.proxy,
        credentials=credentials,
        user_agent=cfg.user_agent,
        dial_timeout=cfg.dial_timeout,
        io_timeout=cfg.io_timeout,
    )
    return TunnelRelay(
        cfg.tunnels,
        client,
        local_only=cfg.local_only,
        emit=emit,
        log_transfers=cfg.verbosity >= 2,
    )


def run_tunnel_relay(
    stop_event: threading.Event,
    cfg: TunnelConfig,
    emit: Optional[Callable[[dict], None]] = None,
) -> None:
    """
    Blocking entry-point: serves every tunnel until stop_event is set.
    Raises ConfigError when a listener cannot be bound.
    """
    relay = build_relay(cfg, emit=emit)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(relay.serve_until(stop_event))
    finally:
        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
        asyncio.set_event_loop(None)
