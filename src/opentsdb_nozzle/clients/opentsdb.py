"""OpenTSDB posters: HTTP /api/put and the telnet-style TCP API."""

import asyncio
import gzip
import logging
from typing import List, Protocol, Tuple

import aiohttp

from ..config.settings import NozzleSettings
from ..encoders import encode_json, encode_telnet
from ..errors import PostError, TransportError
from ..models import Series


logger = logging.getLogger(__name__)

DEFAULT_TELNET_PORT = 4242


class Poster(Protocol):
    """Sends one encoded batch to OpenTSDB; raises on failure."""

    async def post(self, batch: List[Series]) -> None:
        ...


class HTTPPoster:
    """Posts a batch as a single JSON document to <base>/put?details."""

    def __init__(
        self,
        tsdb_url: str,
        gzip_body: bool = False,
        verify_ssl: bool = True,
        request_timeout_seconds: float = 30,
    ):
        self.tsdb_url = tsdb_url.rstrip("/")
        self.gzip_body = gzip_body
        self.verify_ssl = verify_ssl
        self.request_timeout_seconds = request_timeout_seconds

    @property
    def url(self) -> str:
        return f"{self.tsdb_url}/put?details"

    async def post(self, batch: List[Series]) -> None:
        """
        Raises:
            PostError: OpenTSDB answered outside [200, 300)
            TransportError: Connection, DNS or timeout failure
        """
        body = encode_json(batch)
        headers = {"Content-Type": "application/json"}
        if self.gzip_body:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        logger.info(f"Posting {sum(len(series.points) for series in batch)} metrics")

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout_seconds)
            ) as session:
                async with session.post(self.url, data=body, headers=headers, ssl=self.verify_ssl) as response:
                    if response.status < 200 or response.status >= 300:
                        contents = await response.text()
                        logger.warning(f"Response body is: {contents}")
                        raise PostError(response.status, contents)
        except aiohttp.ClientError as e:
            raise TransportError(f"Post {self.url}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Post {self.url}: timed out after {self.request_timeout_seconds}s") from e


class TelnetPoster:
    """Opens a fresh TCP connection per batch and writes `put` lines."""

    def __init__(self, tsdb_address: str):
        self.host, self.port = parse_address(tsdb_address)

    async def post(self, batch: List[Series]) -> None:
        """Dial and write errors (OSError) are raised as-is."""
        payload = encode_telnet(batch)
        logger.debug(f"Writing {len(payload)} bytes to {self.host}:{self.port}")

        _, writer = await asyncio.open_connection(self.host, self.port)
        try:
            writer.write(payload)
            await writer.drain()
        finally:
            writer.close()
            await writer.wait_closed()


def parse_address(address: str) -> Tuple[str, int]:
    """Split 'host:port' (optionally with a scheme) into host and port."""
    if "://" in address:
        address = address.split("://", 1)[1]
    address = address.rstrip("/")

    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_TELNET_PORT
    return host.strip("[]"), int(port)


def create_poster(settings: NozzleSettings) -> Poster:
    """Pick the poster for the configured API. Fixed for the process lifetime."""
    if settings.use_telnet_api:
        logger.info(f"Using OpenTSDB telnet API at {settings.opentsdb_url}")
        return TelnetPoster(settings.opentsdb_url)

    logger.info(f"Using OpenTSDB HTTP API at {settings.opentsdb_url}")
    return HTTPPoster(
        settings.opentsdb_url,
        gzip_body=settings.http_gzip,
        verify_ssl=not settings.insecure_ssl_skip_verify,
    )
