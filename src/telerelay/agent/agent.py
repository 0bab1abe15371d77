"""
telerelay Agent

Main orchestrator: wires the collector pipeline, the outbound queue and the
delivery manager together and owns the process lifecycle.
"""
import asyncio
import logging
import signal
import sys
from typing import Any, Dict

from .buffer import SampleQueue
from .config import AgentConfig
from .connector import connect_websocket
from .delivery import DeliveryManager
from .modules import TaskManager
from .pipeline import CollectorPipeline
from ..protocol.transport import ConnectFn

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Agent:
    """
    Host-resident telemetry agent

    Collectors fill the outbound queue, the delivery manager streams it to
    the server. stop() flushes what is still queued before returning.
    """

    def __init__(self, config: AgentConfig, connect: ConnectFn = connect_websocket, setup_logging: bool = True):
        self.config = config
        self.running = False

        if setup_logging:
            self._setup_logging()
        self.logger = logging.getLogger(__name__)

        # Owns signal-triggered shutdown tasks; collectors have their own manager
        self.task_manager = TaskManager(self.logger)

        self.queue = SampleQueue(config.max_queue_size)
        # Raises ConfigError for unknown collectors
        self.pipeline = CollectorPipeline.from_config(config.collectors, self.queue)
        self.delivery = DeliveryManager(config, self.queue, connect=connect)

        self._stopped = asyncio.Event()
        self._signals_installed = False

    def _setup_logging(self) -> None:
        level = logging.getLevelName(self.config.log_level.upper())
        if not isinstance(level, int):
            level = logging.INFO
        handlers = [logging.StreamHandler(sys.stdout)]
        if self.config.log_file:
            handlers.append(logging.FileHandler(self.config.log_file))
        logging.basicConfig(
            level=level,
            format=LOG_FORMAT,
            handlers=handlers,
            force=True,
        )

    async def start(self) -> None:
        """Start collecting and delivering, then wait until stop() completes"""
        if self.running:
            return

        self.logger.info(f"Starting telerelay agent '{self.config.agent_identity}' -> {self.config.endpoint}")
        self.running = True
        self._stopped.clear()

        self.pipeline.start()
        self.delivery.start()
        self._install_signal_handlers()

        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop collectors, flush the queue and close the session"""
        if not self.running:
            return

        self.logger.info("Stopping telerelay agent...")
        self.running = False
        self._remove_signal_handlers()

        try:
            await self.pipeline.stop()
            await self.delivery.stop(timeout=max(self.config.ack_timeout * 2, 5.0))
        finally:
            self._stopped.set()

        self.logger.info(
            f"Agent stopped ({self.delivery.samples_delivered} samples delivered, "
            f"{self.queue.dropped} dropped)"
        )

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            for signum in SHUTDOWN_SIGNALS:
                loop.add_signal_handler(signum, self._on_signal, signum)
        except (NotImplementedError, RuntimeError):
            # No loop signal support (Windows) or not in the main thread
            self.logger.debug("Signal handlers not installed")
            return
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for signum in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(signum)
        self._signals_installed = False

    def _on_signal(self, signum: int) -> None:
        self.logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        self.task_manager.create_fire_and_forget_task(self.stop(), name=f"shutdown:{signum}")

    def stats(self) -> Dict[str, Any]:
        return {
            "agent_identity": self.config.agent_identity,
            "running": self.running,
            "queue": self.queue.stats(),
            "collectors": self.pipeline.stats(),
            "delivery": self.delivery.stats(),
        }
