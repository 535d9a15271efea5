"""Pipeline controller: firehose subscription, aggregation and flushing."""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .aggregator import AggregationBuffer, SelfMetrics
from .classifier import Action, EventClassifier
from .clients.firehose import FirehoseClient, Subscription
from .clients.opentsdb import Poster
from .clients.uaa import UAATokenFetcher
from .config.settings import NozzleSettings
from .errors import AuthError, FirehoseDisconnect, NozzleError, StartupError
from .events import Envelope


logger = logging.getLogger(__name__)

SLOW_CONSUMER_UPSTREAM_MESSAGE = (
    "We've intercepted an upstream message which indicates that the nozzle or "
    "the TrafficController is not keeping up. Please try scaling up the nozzle."
)
SLOW_CONSUMER_DISCONNECT_MESSAGE = (
    "Disconnected because nozzle couldn't keep up. Please try scaling up the nozzle."
)


class NozzleState(Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class OpenTSDBFirehoseNozzle:
    """
    Drains the firehose into an aggregation buffer and flushes it to OpenTSDB.

    The buffer is flushed when the flush interval elapses, when more than
    max_buffer_size events arrived since the last flush, and once right
    after every disconnect. A disconnect is followed by a fixed cool-down
    and a fresh subscription with a newly fetched token.
    """

    def __init__(
        self,
        settings: NozzleSettings,
        token_fetcher: Optional[UAATokenFetcher],
        poster: Poster,
        firehose: FirehoseClient,
        ip_address: str,
    ):
        self.settings = settings
        self.token_fetcher = token_fetcher
        self.poster = poster
        self.firehose = firehose
        self.ip_address = ip_address

        self.self_metrics = SelfMetrics()
        self.buffer = AggregationBuffer(
            metric_prefix=settings.metric_prefix,
            deployment=settings.deployment,
            ip=ip_address,
            self_metrics=self.self_metrics,
        )
        self.classifier = EventClassifier(settings.metric_prefix, self.self_metrics)

        self.state = NozzleState.STOPPED
        self.stats = {
            "flushes": 0,
            "failed_flushes": 0,
            "connections": 0,
            "start_time": None,
        }

        self._running = False
        self._stop_event = asyncio.Event()
        self._events_since_flush = 0
        self._next_flush = 0.0

    async def start(self):
        """
        Run until stop() is called.

        Raises:
            StartupError: If the first subscription cannot be established
        """
        logger.info("Starting OpenTSDB Firehose Nozzle...")
        self._running = True
        self.stats["start_time"] = datetime.now(timezone.utc)

        try:
            subscription = await self._connect()
        except (AuthError, FirehoseDisconnect) as e:
            self._running = False
            self.state = NozzleState.STOPPED
            raise StartupError(f"Unable to connect to the firehose: {e}") from e

        loop = asyncio.get_running_loop()
        self._next_flush = loop.time() + self.settings.flush_duration_seconds

        try:
            while subscription is not None:
                error = await self._stream(subscription)
                if error is None:
                    break

                await self._handle_error(error, subscription)
                subscription = await self._reconnect()

            # Stopped: ship whatever is still buffered
            await self._post_metrics()
        finally:
            if subscription is not None:
                await subscription.close()
            self._running = False
            self.state = NozzleState.STOPPED
            logger.info("OpenTSDB Firehose Nozzle shutting down...")

    async def stop(self):
        """Ask the running nozzle to flush and return from start()."""
        logger.info("Stopping OpenTSDB Firehose Nozzle")
        self._stop_event.set()

    @property
    def running(self) -> bool:
        return self._running

    async def _connect(self) -> Subscription:
        self.state = NozzleState.CONNECTING

        token = ""
        if not self.settings.disable_access_control:
            token = await self.token_fetcher.fetch_auth_token()

        subscription = await self.firehose.open(token)
        self.stats["connections"] += 1
        self.state = NozzleState.STREAMING
        return subscription

    async def _reconnect(self) -> Optional[Subscription]:
        """Cool down, then reconnect. Returns None once stopped."""
        while True:
            if await self._cool_down():
                return None

            try:
                return await self._connect()
            except (AuthError, FirehoseDisconnect) as e:
                await self._handle_error(e, None)

    async def _cool_down(self) -> bool:
        """Sleep for the reconnect delay; True if stop() was called meanwhile."""
        delay = self.settings.firehose_reconnect_delay_seconds
        logger.info(f"Reconnecting to the firehose in {delay}s")
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _stream(self, subscription: Subscription) -> Optional[FirehoseDisconnect]:
        """
        Multiplex events, the terminal error and the flush deadline.

        Returns the terminal error, or None when stop() was called.
        """
        loop = asyncio.get_running_loop()
        event_task = asyncio.create_task(subscription.events.get())
        error_task = asyncio.create_task(subscription.errors.get())
        stop_task = asyncio.create_task(self._stop_event.wait())

        try:
            while True:
                timeout = max(self._next_flush - loop.time(), 0)
                done, _ = await asyncio.wait(
                    {event_task, error_task, stop_task},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if event_task in done:
                    await self._handle_event(event_task.result())
                    event_task = asyncio.create_task(subscription.events.get())

                # Checked every iteration so a steady event stream cannot starve the timer
                if loop.time() >= self._next_flush:
                    await self._post_metrics()
                    self._next_flush = loop.time() + self.settings.flush_duration_seconds

                if error_task in done:
                    await self._drain_events(subscription, event_task)
                    return error_task.result()

                if stop_task in done:
                    await self._drain_events(subscription, event_task)
                    return None
        finally:
            for task in (event_task, error_task, stop_task):
                if not task.done():
                    task.cancel()

    async def _drain_events(self, subscription: Subscription, event_task: asyncio.Task):
        """Handle every event already read from the subscription."""
        # Settle the pending read first so no flush below can let it take an envelope
        if not event_task.done():
            event_task.cancel()
            await asyncio.wait({event_task})
        if not event_task.cancelled():
            await self._handle_event(event_task.result())

        while not subscription.events.empty():
            await self._handle_event(subscription.events.get_nowait())

    async def _handle_event(self, envelope: Envelope):
        classification = self.classifier.classify(envelope)

        if classification.action is Action.OVERLOAD:
            logger.warning(SLOW_CONSUMER_UPSTREAM_MESSAGE)
            self.buffer.alert_slow_consumer()

        if classification.has_sample:
            self.buffer.add_sample(classification.identity, classification.point)

        self._events_since_flush += 1
        if self._events_since_flush > self.settings.max_buffer_size:
            await self._post_metrics()

    async def _handle_error(self, error: Exception, subscription: Optional[Subscription]):
        self.state = NozzleState.DISCONNECTED
        logger.error(f"Error while reading from the firehose: {error}")

        if isinstance(error, FirehoseDisconnect) and error.indicates_slow_consumer:
            logger.error(SLOW_CONSUMER_DISCONNECT_MESSAGE)
            self.buffer.alert_slow_consumer()

        self.buffer.record_disconnect()
        await self._post_metrics()

        if subscription is not None:
            logger.info(f"Closing connection with traffic controller due to {error}")
            await subscription.close()

    async def _post_metrics(self) -> bool:
        """Flush the buffer. A failed post is logged and its batch dropped."""
        self.buffer.record_self_metrics()
        batch = self.buffer.drain()
        self._events_since_flush = 0

        points = sum(len(series.points) for series in batch)
        try:
            await self.poster.post(batch)
        except (NozzleError, OSError, asyncio.TimeoutError) as e:
            self.stats["failed_flushes"] += 1
            logger.error(f"Error posting {points} metrics to OpenTSDB: {e}")
            return False

        self.buffer.mark_sent(points)
        self.stats["flushes"] += 1
        logger.debug(f"Flushed {points} metrics", extra={"points": points, "series": len(batch)})
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get nozzle statistics."""
        stats = self.stats.copy()
        stats.update(self.buffer.get_stats())
        stats["state"] = self.state.value
        stats["running"] = self._running
        if stats["start_time"]:
            stats["uptime_seconds"] = (datetime.now(timezone.utc) - stats["start_time"]).total_seconds()
        return stats
