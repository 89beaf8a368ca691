from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

CLIENT = "client"
PROXY = "proxy"
_OTHER = {CLIENT: PROXY, PROXY: CLIENT}


@dataclass
class RelayPeer:
    """
    One half of a relay pair. The counterpart is reached through the table
    by (pair_id, other side), never held directly.
    """
    pair_id: int
    side: str
    reader: asyncio.StreamReader = field(repr=False)
    writer: asyncio.StreamWriter = field(repr=False)
    local_addr: Optional[Tuple] = None
    remote_addr: Optional[Tuple] = None
    remote_desc: Optional[str] = None
    bytes_read: int = 0

    @property
    def peer_side(self) -> str:
        return _OTHER[self.side]


class PairingTable:
    """
    Owns both RelayPeers of every live pair.

    Pairs are inserted and removed as a unit; nothing awaits in between, so
    the event loop never sees half a pair.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._by_writer: Dict[asyncio.StreamWriter, RelayPeer] = {}
        self._pairs: Dict[int, Dict[str, RelayPeer]] = {}

    def register(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        proxy_reader: asyncio.StreamReader,
        proxy_writer: asyncio.StreamWriter,
        *,
        dest: str,
        client_addr: Optional[Tuple] = None,
        client_local_addr: Optional[Tuple] = None,
        proxy_local_addr: Optional[Tuple] = None,
    ) -> int:
        if client_writer in self._by_writer or proxy_writer in self._by_writer:
            raise ValueError("stream already registered")
        pair_id = next(self._ids)
        client = RelayPeer(
            pair_id=pair_id,
            side=CLIENT,
            reader=client_reader,
            writer=client_writer,
            local_addr=client_local_addr,
            remote_addr=client_addr,
        )
        proxy = RelayPeer(
            pair_id=pair_id,
            side=PROXY,
            reader=proxy_reader,
            writer=proxy_writer,
            local_addr=proxy_local_addr,
            remote_desc=dest,
        )
        self._pairs[pair_id] = {CLIENT: client, PROXY: proxy}
        self._by_writer[client_writer] = client
        self._by_writer[proxy_writer] = proxy
        return pair_id

    def unregister(self, pair_id: int) -> Optional[Tuple[RelayPeer, RelayPeer]]:
        """Remove both halves; None if the pair is already gone."""
        halves = self._pairs.pop(pair_id, None)
        if halves is None:
            return None
        client, proxy = halves[CLIENT], halves[PROXY]
        self._by_writer.pop(client.writer, None)
        self._by_writer.pop(proxy.writer, None)
        return client, proxy

    def get(self, writer: asyncio.StreamWriter) -> Optional[RelayPeer]:
        return self._by_writer.get(writer)

    def peer_of(self, writer: asyncio.StreamWriter) -> RelayPeer:
        me = self._by_writer[writer]
        return self._pairs[me.pair_id][me.peer_side]

    def pair(self, pair_id: int) -> Optional[Tuple[RelayPeer, RelayPeer]]:
        halves = self._pairs.get(pair_id)
        if halves is None:
            return None
        return halves[CLIENT], halves[PROXY]

    def pair_ids(self) -> List[int]:
        return list(self._pairs)

    def __contains__(self, writer: object) -> bool:
        return writer in self._by_writer

    def __len__(self) -> int:
        return len(self._pairs)

    def __iter__(self) -> Iterator[RelayPeer]:
        return iter(list(self._by_writer.values()))
