"""
Basic nbhttp client example.

This example demonstrates the three ways of consuming a result: blocking
on the future, passing a callback and awaiting the future.
"""

import asyncio
import logging
import threading

from nbhttp import HTTPClient

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def blocking_get(client: HTTPClient):
    """Demonstrate a GET request consumed by blocking."""
    logger.info("Making simple GET request...")
    result = client.get(
        "http://httpbin.org/get",
        query_params={"filter": {"name": "nbhttp", "tags": ["a", "b"]}},
    ).result()

    if result.error is not None:
        logger.error(f"Request failed: {result.error}")
        return
    logger.info(f"Response status: {result.status}")
    logger.info(f"Content-Type: {result.headers.get('content-type')}")
    logger.info(f"Body: {len(result.body)} characters")


def callback_post(client: HTTPClient):
    """Demonstrate a POST request consumed by a callback."""
    logger.info("Making POST request with a callback...")
    done = threading.Event()

    def on_result(result):
        if result.error is None:
            logger.info(f"Callback got {result.status} for request {result.opts['request_id']}")
        else:
            logger.error(f"Callback got error: {result.error}")
        done.set()

    client.post(
        "http://httpbin.org/post",
        form_params={"message": "Hello, World!"},
        request_id=1,
        callback=on_result,
    )
    done.wait(30)


def keep_alive_demo(client: HTTPClient):
    """Demonstrate connection reuse across requests."""
    logger.info("Demonstrating keep-alive with multiple requests...")
    for path in ("/get", "/headers", "/ip"):
        result = client.get(f"http://httpbin.org{path}").result()
        logger.info(f"{path}: {result.status}")
    logger.info(f"Pool metrics: {client.pool.metrics}")


async def awaited_requests(client: HTTPClient):
    """Demonstrate awaiting several futures concurrently."""
    logger.info("Awaiting concurrent requests...")
    results = await asyncio.gather(*[
        client.get("http://httpbin.org/delay/1", timeout=5000) for _ in range(3)
    ])
    for result in results:
        logger.info(f"Concurrent result: {result.status} {result.error}")


def main():
    """Run all examples."""
    logger.info("Starting nbhttp client examples...")

    with HTTPClient(timeout=10000) as client:
        blocking_get(client)
        callback_post(client)
        keep_alive_demo(client)
        asyncio.run(awaited_requests(client))

    logger.info("All examples completed successfully!")


if __name__ == "__main__":
    main()
