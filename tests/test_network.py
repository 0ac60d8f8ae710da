"""
Tests for network interfaces, the mock implementations and the asyncio
backend.
"""

import asyncio
import socket
import ssl

import pytest

from nbhttp.network import (
    AsyncioNetworkBackend,
    MockNetworkBackend,
    MockNetworkStream,
    NetworkBackend,
    NetworkStream,
    configure_socket,
    create_ssl_context,
    format_host_header,
    get_ssl_context,
    is_ipv6_address,
)


class TestMockNetworkStream:
    """Test cases for MockNetworkStream."""

    @pytest.mark.asyncio
    async def test_read_write_basic(self):
        stream = MockNetworkStream()
        await stream.write(b"hello world")
        assert stream.written_data == b"hello world"

        stream.add_data(b"hello world")
        assert await stream.read(5) == b"hello"
        assert await stream.read() == b" world"

    @pytest.mark.asyncio
    async def test_read_empty_stream(self):
        stream = MockNetworkStream()
        assert await stream.read() == b""
        assert await stream.read(10) == b""

    @pytest.mark.asyncio
    async def test_read_after_close(self):
        stream = MockNetworkStream(b"data")
        await stream.aclose()
        assert stream.is_closed
        with pytest.raises(RuntimeError):
            await stream.read()

    @pytest.mark.asyncio
    async def test_write_after_close(self):
        stream = MockNetworkStream()
        await stream.aclose()
        with pytest.raises(RuntimeError):
            await stream.write(b"data")

    @pytest.mark.asyncio
    async def test_fail_writes(self):
        with pytest.raises(ConnectionResetError):
            await MockNetworkStream(fail_writes=True).write(b"x")

    @pytest.mark.asyncio
    async def test_waiting_read_wakes_on_data(self):
        stream = MockNetworkStream(auto_eof=False)
        reader = asyncio.create_task(stream.read())
        await asyncio.sleep(0.01)
        assert not reader.done()

        stream.add_data(b"late")
        assert await reader == b"late"

    @pytest.mark.asyncio
    async def test_waiting_read_sees_eof(self):
        stream = MockNetworkStream(auto_eof=False)
        reader = asyncio.create_task(stream.read())
        await asyncio.sleep(0.01)
        stream.feed_eof()
        assert await reader == b""
        assert stream.at_eof()

    @pytest.mark.asyncio
    async def test_waiting_read_fails_on_close(self):
        stream = MockNetworkStream(auto_eof=False)
        reader = asyncio.create_task(stream.read())
        await asyncio.sleep(0.01)
        await stream.aclose()
        with pytest.raises(RuntimeError):
            await reader

    def test_extra_info(self):
        stream = MockNetworkStream()
        assert stream.get_extra_info("peername") is None
        stream.set_extra_info("peername", ("127.0.0.1", 80))
        assert stream.get_extra_info("peername") == ("127.0.0.1", 80)


class TestMockNetworkBackend:
    """Test cases for MockNetworkBackend."""

    @pytest.mark.asyncio
    async def test_connect_tcp_creates_new_streams(self):
        backend = MockNetworkBackend()
        first = await backend.connect_tcp("example.com", 80)
        second = await backend.connect_tcp("example.com", 80)
        assert first is not second
        assert backend.connect_count == 2
        assert backend.get_connections("example.com", 80) == [first, second]
        assert first.get_extra_info("peername") == ("example.com", 80)

    @pytest.mark.asyncio
    async def test_queued_streams_first(self):
        queued = MockNetworkStream(b"queued")
        backend = MockNetworkBackend(lambda host, port: MockNetworkStream(b"factory"))
        backend.add_stream("example.com", 80, queued)
        assert await backend.connect_tcp("example.com", 80) is queued
        assert await (await backend.connect_tcp("example.com", 80)).read() == b"factory"

    @pytest.mark.asyncio
    async def test_fail_connect(self):
        backend = MockNetworkBackend()
        backend.fail_connect("down.com", 80, ConnectionRefusedError("refused"))
        with pytest.raises(ConnectionRefusedError):
            await backend.connect_tcp("down.com", 80)
        assert backend.connect_count == 0

    @pytest.mark.asyncio
    async def test_start_tls(self):
        backend = MockNetworkBackend()
        stream = await backend.connect_tcp("example.com", 443)
        upgraded = await backend.start_tls(stream, "example.com", get_ssl_context())
        assert upgraded is stream
        assert upgraded.get_extra_info("ssl_object")
        assert upgraded.get_extra_info("server_hostname") == "example.com"
        assert backend.tls_count == 1

    @pytest.mark.asyncio
    async def test_reset(self):
        backend = MockNetworkBackend()
        await backend.connect_tcp("example.com", 80)
        backend.fail_connect("example.com", 81, OSError())
        backend.reset()
        assert backend.connect_count == 0
        assert backend.get_connections("example.com", 80) == []
        await backend.connect_tcp("example.com", 81)


class TestNetworkInterfaces:
    """Test cases for the abstract interfaces."""

    def test_network_stream_interface(self):
        with pytest.raises(TypeError):
            NetworkStream()

    def test_network_backend_interface(self):
        with pytest.raises(TypeError):
            NetworkBackend()

    def test_implementations(self):
        assert isinstance(MockNetworkStream(), NetworkStream)
        assert isinstance(MockNetworkBackend(), NetworkBackend)
        assert isinstance(AsyncioNetworkBackend(), NetworkBackend)


class TestNetworkUtils:
    """Test network utility functions."""

    @pytest.mark.parametrize("host,port,scheme,expected", [
        ("example.com", 80, "http", "example.com"),
        ("example.com", 443, "https", "example.com"),
        ("example.com", 8080, "http", "example.com:8080"),
        ("example.com", 80, "https", "example.com:80"),
        ("::1", 8443, "https", "[::1]:8443"),
    ])
    def test_format_host_header(self, host, port, scheme, expected):
        assert format_host_header(host, port, scheme) == expected

    def test_is_ipv6_address(self):
        assert is_ipv6_address("::1")
        assert is_ipv6_address("2001:db8::1")
        assert not is_ipv6_address("127.0.0.1")
        assert not is_ipv6_address("example.com")

    def test_ssl_context_verifies_by_default(self):
        context = create_ssl_context()
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2

    def test_insecure_ssl_context(self):
        context = create_ssl_context(insecure=True)
        assert context.verify_mode == ssl.CERT_NONE
        assert not context.check_hostname

    def test_shared_contexts(self):
        assert get_ssl_context() is get_ssl_context()
        assert get_ssl_context(insecure=True) is not get_ssl_context()

    def test_configure_socket(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            configure_socket(sock)
            assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY)
            assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE)
        finally:
            sock.close()


class TestAsyncioNetworkBackend:
    """Test the asyncio backend against the local test server."""

    @pytest.mark.asyncio
    async def test_request_roundtrip(self, server):
        backend = AsyncioNetworkBackend()
        stream = await backend.connect_tcp(server.host, server.port, timeout=2.0)
        try:
            await stream.write(
                b"GET /hello HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n"
            )
            data = b""
            while True:
                chunk = await stream.read(1024)
                if not chunk:
                    break
                data += chunk
        finally:
            await stream.aclose()

        assert data.startswith(b"HTTP/1.1 200 ")
        assert data.endswith(b"hello")
        assert stream.is_closed

    @pytest.mark.asyncio
    async def test_extra_info(self, server):
        backend = AsyncioNetworkBackend()
        stream = await backend.connect_tcp(server.host, server.port)
        try:
            assert stream.get_extra_info("peername")[1] == server.port
            assert stream.get_extra_info("ssl_object") is None
            assert not stream.at_eof()
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server):
        stream = await AsyncioNetworkBackend().connect_tcp(server.host, server.port)
        await stream.aclose()
        await stream.aclose()
        with pytest.raises(RuntimeError):
            await stream.read()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        sock = socket.socket()
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()
        with pytest.raises(OSError):
            await AsyncioNetworkBackend().connect_tcp("127.0.0.1", port, timeout=2.0)

    @pytest.mark.asyncio
    async def test_start_tls_rejects_foreign_stream(self):
        with pytest.raises(TypeError):
            await AsyncioNetworkBackend().start_tls(MockNetworkStream(), "example.com", get_ssl_context())
