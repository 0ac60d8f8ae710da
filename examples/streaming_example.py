"""
Streaming example using nbhttp.

This example demonstrates uploading a generated body with chunked
transfer encoding, reading a large response as a stream and limiting
response sizes with a body filter.
"""

import asyncio
import logging

from nbhttp import HTTPClient, SizeLimitError, max_body_filter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def streaming_upload(client: HTTPClient):
    """Upload a body produced chunk by chunk."""
    logger.info("=== Chunked upload ===")

    async def file_chunks():
        """Simulate reading a 100KB file in 8KB chunks."""
        content = b"x" * 1024 * 100
        for i in range(0, len(content), 8192):
            yield content[i:i + 8192]
            await asyncio.sleep(0.01)

    result = client.post(
        "http://httpbin.org/post",
        body=file_chunks(),
        headers={"Content-Type": "application/octet-stream"},
    ).result()
    logger.info(f"Upload finished with status {result.status}")


def streaming_download(client: HTTPClient):
    """Read a response body in chunks from this thread."""
    logger.info("=== Streaming download ===")
    result = client.get("http://httpbin.org/stream-bytes/65536", as_="stream").result()
    if result.error is not None:
        logger.error(f"Download failed: {result.error}")
        return

    body = result.body.read()
    logger.info(f"Streaming complete: {len(body)} bytes")


def size_limited_download(client: HTTPClient):
    """Reject responses larger than a limit."""
    logger.info("=== Size limited download ===")
    result = client.get("http://httpbin.org/bytes/4096", filter=max_body_filter(1024)).result()
    if isinstance(result.error, SizeLimitError):
        logger.info(f"Rejected as expected: {result.error}")
    else:
        logger.info(f"Unexpectedly accepted {len(result.body)} bytes")


def main():
    with HTTPClient(timeout=30000) as client:
        streaming_upload(client)
        streaming_download(client)
        size_limited_download(client)


if __name__ == "__main__":
    main()
