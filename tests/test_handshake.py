import asyncio

import pytest

from connect_tunnel.config import ProxyAddress
from connect_tunnel.handshake import (
    HandshakeError,
    ProxyHandshakeClient,
    basic_auth_value,
    parse_status_line,
    static_credentials,
)

from fakeproxy import Behaviour, FakeProxy, unused_port


def _client(port, **kw):
    kw.setdefault("dial_timeout", 2.0)
    kw.setdefault("io_timeout", 2.0)
    return ProxyHandshakeClient(ProxyAddress("127.0.0.1", port), **kw)


def test_parse_status_line():
    assert parse_status_line("HTTP/1.1 200 Connection Established") == (200, "200 Connection Established")
    assert parse_status_line("HTTP/1.0 407 Proxy Authentication Required") == (
        407, "407 Proxy Authentication Required")
    assert parse_status_line("HTTP/1.1 204") == (204, "204")
    assert parse_status_line("SSH-2.0-OpenSSH")[0] == 0
    assert parse_status_line("HTTP/1.1 abc nope")[0] == 0


def test_basic_auth_value():
    assert basic_auth_value("user", "pass") == "Basic dXNlcjpwYXNz"


def test_connect_success_sends_connect_request():
    async def scenario():
        async with FakeProxy() as proxy:
            res = await _client(proxy.port, user_agent="test-agent/1").connect("example.com", 443)
            try:
                assert res.status_line == "200 Connection Established"
                assert res.local_addr[0] == "127.0.0.1"
                res.writer.write(b"ping")
                await res.writer.drain()
                assert await asyncio.wait_for(res.reader.readexactly(4), 2.0) == b"ping"
            finally:
                res.writer.close()
            req = proxy.requests[0]
            assert req.line == "CONNECT example.com:443 HTTP/1.1"
            assert req.headers["host"] == "example.com:443"
            assert req.headers["user-agent"] == "test-agent/1"
            assert "proxy-authorization" not in req.headers

    asyncio.run(scenario())


def test_connect_sends_credentials_from_provider():
    async def scenario():
        calls = []

        def provider():
            calls.append(1)
            return ("user", "pass")

        async with FakeProxy() as proxy:
            res = await _client(proxy.port, credentials=provider).connect("example.com", 22)
            res.writer.close()
            assert proxy.requests[0].headers["proxy-authorization"] == "Basic dXNlcjpwYXNz"
            assert calls == [1]

    asyncio.run(scenario())


def test_connect_keeps_bytes_sent_right_after_the_reply():
    async def scenario():
        greeting = b"SSH-2.0-test\r\n"
        async with FakeProxy(Behaviour(mode="close", greeting=greeting)) as proxy:
            res = await _client(proxy.port).connect("git.example.com", 22)
            try:
                assert await asyncio.wait_for(res.reader.readexactly(len(greeting)), 2.0) == greeting
            finally:
                res.writer.close()

    asyncio.run(scenario())


@pytest.mark.parametrize("status", ["407 Proxy Authentication Required", "502 Bad Gateway", "403 Forbidden"])
def test_connect_non_success_status(status):
    async def scenario():
        async with FakeProxy(Behaviour(status=status)) as proxy:
            with pytest.raises(HandshakeError) as ei:
                await _client(proxy.port, credentials=static_credentials("u", "p")).connect("example.com", 443)
            assert ei.value.status == int(status.split()[0])
            assert ei.value.reason == status

    asyncio.run(scenario())


def test_connect_unreachable_proxy():
    async def scenario():
        with pytest.raises(HandshakeError) as ei:
            await _client(unused_port()).connect("example.com", 443)
        assert ei.value.status is None
        assert "unreachable" in ei.value.reason

    asyncio.run(scenario())


def test_connect_proxy_hangs_up_without_reply():
    async def scenario():
        async def hang_up(r, w):
            await r.readline()
            w.close()

        srv = await asyncio.start_server(hang_up, "127.0.0.1", 0)
        port = srv.sockets[0].getsockname()[1]
        try:
            with pytest.raises(HandshakeError) as ei:
                await _client(port).connect("example.com", 443)
            assert ei.value.status is None
        finally:
            srv.close()

    asyncio.run(scenario())


def test_connect_times_out_on_silent_proxy():
    async def scenario():
        async with FakeProxy(Behaviour(delay=5.0)) as proxy:
            with pytest.raises(HandshakeError, match="timed out"):
                await _client(proxy.port, io_timeout=0.2).connect("example.com", 443)

    asyncio.run(scenario())
