"""
Network stream interface for nbhttp.

This module defines the NetworkStream interface that all network stream
implementations must follow, whether backed by a real socket or by
in-memory test data.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class NetworkStream(ABC):
    """
    Interface for byte streams with async I/O operations.

    A stream belongs to exactly one connection and is only touched from
    the event loop that created it.
    """

    @abstractmethod
    async def read(self, max_bytes: Optional[int] = None) -> bytes:
        """
        Read data from the stream.

        Args:
            max_bytes: Maximum number of bytes to read.

        Returns:
            The data read, or ``b""`` once the peer closed the stream.

        Raises:
            OSError: If a network error occurs.
        """

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """
        Write data to the stream and wait until it is flushed.

        Raises:
            OSError: If a network error occurs.
        """

    @abstractmethod
    async def aclose(self) -> None:
        """Close the stream. Safe to call more than once."""

    @abstractmethod
    def get_extra_info(self, name: str) -> Optional[Any]:
        """
        Get extra information about the stream.

        Args:
            name: Common values include "socket", "peername", "sockname"
                  and "ssl_object".
        """

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once the stream has been closed locally."""

    def at_eof(self) -> bool:
        """True when the peer is known to have closed its side."""
        return False

    @property
    def is_tls(self) -> bool:
        return self.get_extra_info("ssl_object") is not None
