"""OpenTSDB Firehose Nozzle - forwards firehose metrics to OpenTSDB."""

import argparse
import asyncio
import faulthandler
import logging
import os
import signal
import sys
from typing import Optional

from .clients.firehose import FirehoseClient
from .clients.opentsdb import create_poster
from .clients.uaa import UAATokenFetcher
from .config.settings import load_settings
from .errors import NozzleError
from .nozzle import OpenTSDBFirehoseNozzle
from .utils.logging import setup_logging
from .utils.network import local_ip


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config/opentsdb-firehose-nozzle.yaml"


class NozzleService:
    """Wires the nozzle to its collaborators and runs it until signalled."""

    def __init__(self, config_file: Optional[str] = DEFAULT_CONFIG_FILE):
        self.settings = load_settings(config_file)
        self.nozzle: Optional[OpenTSDBFirehoseNozzle] = None
        self._shutdown_event = asyncio.Event()

        # Setup logging
        setup_logging(
            self.settings.logging,
            nozzle=f"{self.settings.job}/{self.settings.index}",
            deployment=self.settings.deployment,
        )
        logger.info(f"OpenTSDB Firehose Nozzle initialized from {config_file}")

    async def start(self):
        """
        Start the nozzle and block until a shutdown signal.

        Raises:
            LocalIPError: If the local IP address cannot be resolved
            StartupError: If the first firehose connection fails
        """
        settings = self.settings
        ip_address = local_ip()

        token_fetcher = None
        if not settings.disable_access_control:
            token_fetcher = UAATokenFetcher(
                settings.uaa_url,
                settings.username,
                settings.password,
                insecure_ssl_skip_verify=settings.insecure_ssl_skip_verify,
            )

        firehose = FirehoseClient(
            settings.traffic_controller_url,
            settings.firehose_subscription_id,
            insecure_ssl_skip_verify=settings.insecure_ssl_skip_verify,
            idle_timeout_seconds=settings.idle_timeout_seconds,
        )

        self.nozzle = OpenTSDBFirehoseNozzle(
            settings,
            token_fetcher=token_fetcher,
            poster=create_poster(settings),
            firehose=firehose,
            ip_address=ip_address,
        )

        self._setup_signal_handlers()

        nozzle_task = asyncio.create_task(self.nozzle.start())
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        done, _ = await asyncio.wait({nozzle_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        if nozzle_task in done:
            shutdown_task.cancel()
            # Surfaces StartupError
            nozzle_task.result()
            return

        # Graceful shutdown
        logger.info("Shutting down OpenTSDB Firehose Nozzle")
        await self.nozzle.stop()
        await nozzle_task

        logger.info(f"OpenTSDB Firehose Nozzle stopped: {self.nozzle.get_stats()}")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown and stack dumps."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        # Diagnostic dump of every thread's stack
        if hasattr(signal, "SIGUSR1"):
            faulthandler.register(signal.SIGUSR1, all_threads=True)


async def main(config_file: Optional[str] = None):
    """Main entry point."""
    if config_file is None:
        config_file = os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE)

    try:
        service = NozzleService(config_file)
        await service.start()
    except NozzleError as e:
        logger.error(f"Nozzle failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Nozzle failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    parser = argparse.ArgumentParser(description="Forward Cloud Foundry firehose metrics to OpenTSDB")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to the config file (default: $CONFIG_FILE or {DEFAULT_CONFIG_FILE})",
    )
    args = parser.parse_args()

    asyncio.run(main(args.config))


if __name__ == "__main__":
    run()
