"""Loggregator firehose websocket client."""

import asyncio
import logging
import ssl
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ..errors import EnvelopeDecodeError, FirehoseDisconnect
from ..events import Envelope, decode_envelope


logger = logging.getLogger(__name__)


class Subscription:
    """
    One live firehose subscription.

    The reader task puts decoded envelopes on `events` and, when the
    connection ends for any reason, exactly one FirehoseDisconnect on
    `errors`.
    """

    def __init__(self):
        self.events: "asyncio.Queue[Envelope]" = asyncio.Queue()
        self.errors: "asyncio.Queue[FirehoseDisconnect]" = asyncio.Queue()
        self.websocket: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task] = None
        self.stats = {
            "frames_received": 0,
            "decode_errors": 0,
        }

    def attach(self, websocket: Any, reader) -> None:
        self.websocket = websocket
        self._reader_task = asyncio.create_task(reader)

    async def close(self) -> None:
        """Stop the reader and close the websocket. Safe to call twice."""
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None


class FirehoseClient:
    """Opens subscriptions to <traffic_controller_url>/firehose/<subscription_id>."""

    def __init__(
        self,
        traffic_controller_url: str,
        subscription_id: str,
        insecure_ssl_skip_verify: bool = False,
        idle_timeout_seconds: float = 60,
    ):
        self.traffic_controller_url = traffic_controller_url.rstrip("/")
        self.subscription_id = subscription_id
        self.insecure_ssl_skip_verify = insecure_ssl_skip_verify
        self.idle_timeout_seconds = idle_timeout_seconds
        self.stats = {"connection_count": 0}

    @property
    def firehose_url(self) -> str:
        return f"{self.traffic_controller_url}/firehose/{self.subscription_id}"

    async def open(self, token: str) -> Subscription:
        """
        Connect and start streaming into a fresh Subscription.

        Raises:
            FirehoseDisconnect: If the connection cannot be established
        """
        headers = {"Authorization": token} if token else {}
        options: Dict[str, Any] = {
            "additional_headers": headers,
            "open_timeout": self.idle_timeout_seconds,
            "max_size": None,
            "compression": None,
        }
        if self.firehose_url.startswith("wss://"):
            options["ssl"] = self._ssl_context()

        logger.info(f"Connecting to firehose: {self.firehose_url}")

        try:
            websocket = await websockets.connect(self.firehose_url, **options)
        except InvalidStatus as e:
            raise FirehoseDisconnect(
                f"firehose rejected the subscription with HTTP {e.response.status_code}"
            ) from e
        except asyncio.TimeoutError as e:
            raise FirehoseDisconnect(
                f"timed out after {self.idle_timeout_seconds}s connecting to {self.firehose_url}"
            ) from e
        except (OSError, WebSocketException) as e:
            raise FirehoseDisconnect(f"unable to connect to {self.firehose_url}: {e}") from e

        self.stats["connection_count"] += 1
        logger.info("Connected to firehose")

        subscription = Subscription()
        subscription.attach(websocket, self._read(websocket, subscription))
        return subscription

    async def _read(self, websocket, subscription: Subscription) -> None:
        try:
            async for frame in websocket:
                subscription.stats["frames_received"] += 1
                if isinstance(frame, str):
                    frame = frame.encode("utf-8")

                try:
                    envelope = decode_envelope(frame)
                except EnvelopeDecodeError as e:
                    subscription.stats["decode_errors"] += 1
                    logger.warning(f"Skipping firehose frame: {e}")
                    continue

                subscription.events.put_nowait(envelope)

            # Iteration ends cleanly on a normal closure
            disconnect = FirehoseDisconnect(websocket.close_reason or "", websocket.close_code)
        except ConnectionClosed as e:
            close = e.rcvd or e.sent
            if close is not None:
                disconnect = FirehoseDisconnect(close.reason, close.code)
            else:
                disconnect = FirehoseDisconnect(f"connection lost: {e}")
        except (OSError, WebSocketException) as e:
            disconnect = FirehoseDisconnect(f"error reading from firehose: {e}")

        subscription.errors.put_nowait(disconnect)

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.insecure_ssl_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context
