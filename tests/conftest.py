"""
Pytest configuration for nbhttp tests.

This file contains shared fixtures and configuration
for all tests in the project.
"""

from typing import List

import pytest

from nbhttp import ClientConfig, HTTPClient
from nbhttp.http_primitives import ConnectionKey, Headers, RequestDescriptor, URLComponents
from servers.server import TestServer


class MockAsyncStream:
    """Mock async stream for testing."""

    def __init__(self, data: List[bytes]) -> None:
        self.data = data
        self.index = 0

    def __aiter__(self) -> "MockAsyncStream":
        return self

    async def __anext__(self) -> bytes:
        if self.index >= len(self.data):
            raise StopAsyncIteration
        result = self.data[self.index]
        self.index += 1
        return result


@pytest.fixture
def mock_stream():
    """Create a mock async stream for testing."""
    def _create_stream(data: List[bytes]) -> MockAsyncStream:
        return MockAsyncStream(data)
    return _create_stream


@pytest.fixture
def async_data_generator():
    """Create an async data generator for testing."""
    async def generator(data: List[bytes]):
        for chunk in data:
            yield chunk

    return generator


@pytest.fixture
def sample_headers():
    """Sample headers for testing."""
    return Headers([
        ("Content-Type", "application/json"),
        ("Authorization", "Bearer token123"),
        ("User-Agent", "nbhttp/0.1.0"),
        ("Accept", "*/*"),
    ])


@pytest.fixture
def http_key():
    """Connection key for plain HTTP to example.com."""
    return ConnectionKey("http", "example.com", 80)


@pytest.fixture
def make_descriptor():
    """Build a RequestDescriptor from a URL and field overrides."""
    def _make(url: str = "http://example.com/", method: str = "GET", **fields) -> RequestDescriptor:
        return RequestDescriptor(method=method, url=URLComponents.from_url(url), **fields)
    return _make


@pytest.fixture(scope="session")
def server():
    """Threaded HTTP/1.1 server shared by the whole session."""
    test_server = TestServer().start()
    yield test_server
    test_server.stop()


@pytest.fixture
def client():
    """Client with a short sweep interval, closed after the test."""
    http_client = HTTPClient(ClientConfig(cleanup_interval=0.05, timeout_ms=5000))
    yield http_client
    http_client.close()
