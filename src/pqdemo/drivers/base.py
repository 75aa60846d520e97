"""Base driver with common functionality."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import IO, Any, TypeVar

from rich.console import Console

from pqdemo.drivers.lifecycle import DriverState, Lifecycle, ShutdownLatch
from pqdemo.drivers.pacer import RatePacer
from pqdemo.drivers.result import ExecutionResult
from pqdemo.drivers.stats import PUBLISHED, Counters, StatsSampler
from pqdemo.models.config import DemoConfig
from pqdemo.models.message import InboundMessage, PublishReceipt
from pqdemo.runtime import get_executor, shutdown_executor
from pqdemo.transport.base import Transport
from pqdemo.transport.events import (
    FlowEvent,
    FlowFailure,
    MessageDelivered,
    ReceiptEvent,
    ReconnectAttempt,
    Reconnected,
    ServiceInterrupted,
    TransportEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENT_POLL_SECONDS = 0.2


class Driver(ABC):
    """Base class for the publish and consume drivers.

    A driver owns one transport session. ``execute`` connects, runs the main
    loop until the shutdown latch is set, then tears everything down in order.
    Transport calls block, so they run on the shared executor; transport events
    are drained by a single task and handled on the event loop.
    """

    api = "Python"
    sample_name = "Driver"
    direction = PUBLISHED
    periodic_stats = False

    def __init__(
        self,
        config: DemoConfig,
        transport: Transport,
        *,
        console: Console | None = None,
        stdin: IO[str] | None = None,
        stats_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        handle_signals: bool = True,
    ):
        self.config = config
        self.transport = transport
        self.console = console or Console()
        self.counters = Counters()
        self.latch = ShutdownLatch()
        self.lifecycle = Lifecycle(self.sample_name)
        self.pacer = RatePacer(config.rate, self.latch, clock=clock, sleep=sleep)
        self.sampler = StatsSampler(
            self.counters,
            api=self.api,
            sample_name=self.sample_name,
            direction=self.direction,
            interval=stats_interval,
            console=self.console,
            clock=clock,
        )
        self.message_limit = 0
        self._stdin = stdin
        self._handle_signals = handle_signals
        self._events_open = False
        self._event_task: asyncio.Task | None = None

    def request_stop(self, reason: str = "operator request") -> None:
        if self.latch.set(reason):
            logger.info("Shutdown requested: %s", reason)

    @property
    def should_stop(self) -> bool:
        return self.latch.is_set()

    def _check_limit(self, count: int) -> None:
        if self.message_limit and count >= self.message_limit:
            self.request_stop("message limit reached")

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking transport call on the shared executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(get_executor(), functools.partial(fn, *args))

    # Transport events

    async def _pump_events(self) -> None:
        while self._events_open:
            event = await self.call(self.transport.events.get, EVENT_POLL_SECONDS)
            if event is not None:
                await self.dispatch(event)

    async def _close_events(self) -> None:
        self._events_open = False
        if self._event_task is not None:
            await self._event_task
            self._event_task = None
        # Whatever arrived during teardown is still handled, in order
        while (event := self.transport.events.get_nowait()) is not None:
            await self.dispatch(event)

    async def dispatch(self, event: TransportEvent) -> None:
        """Handle one transport event; failures are logged, never raised."""
        try:
            match event:
                case ServiceInterrupted(cause=cause):
                    logger.warning("### SERVICE INTERRUPTION: %s", cause)
                case ReconnectAttempt(detail=detail):
                    logger.info("### RECONNECTING ATTEMPT: %s", detail)
                case Reconnected(detail=detail):
                    logger.info("### RECONNECTED: %s", detail)
                case FlowEvent(description=description):
                    logger.info("### Received a Flow event: %s", description)
                case FlowFailure(error=error, fatal=fatal):
                    await self.on_flow_failure(error, fatal)
                case ReceiptEvent(receipt=receipt):
                    self.on_receipt(receipt)
                case MessageDelivered(message=message):
                    await self.on_message(message)
                case _:
                    logger.debug("Ignoring unknown event %r", event)
        except Exception:
            logger.exception("Error while handling %s", type(event).__name__)

    def on_receipt(self, receipt: PublishReceipt) -> None:
        logger.debug("Ignoring receipt for %s", receipt.message)

    async def on_message(self, message: InboundMessage) -> None:
        logger.debug("Ignoring pushed message %s", message.partition_key)

    async def on_flow_failure(self, error: Exception, fatal: bool) -> None:
        if fatal:
            logger.error("### Flow failed: %s", error)
        else:
            logger.warning("### Flow closed after error: %s", error)
        self.request_stop(f"flow failure: {error}")

    # Operator signals

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> Callable[[], None]:
        installed: list[signal.Signals] = []

        def signal_handler(sig: signal.Signals) -> None:
            self.console.print("\n[yellow]Shutting down gracefully...[/yellow]")
            self.request_stop(sig.name)

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, signal_handler, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)

        def remove() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return remove

    def _watch_stdin(self, loop: asyncio.AbstractEventLoop) -> Callable[[], None] | None:
        stream = self._stdin
        if stream is None:
            return None
        try:
            fd = stream.fileno()
        except (AttributeError, OSError, ValueError):
            return None

        def on_input() -> None:
            if stream.readline():
                self.request_stop("operator input")
            else:
                # EOF: nothing more can arrive, keep running
                loop.remove_reader(fd)

        try:
            loop.add_reader(fd, on_input)
        except (NotImplementedError, OSError, ValueError):
            logger.debug("Cannot watch stdin for a shutdown request")
            return None
        return lambda: loop.remove_reader(fd)

    # Lifecycle

    async def setup(self) -> None:
        """Create the publisher or bind the receiver. Override in subclasses."""

    @abstractmethod
    async def main_loop(self) -> None:
        """Run until the shutdown latch is set."""

    async def teardown(self) -> None:
        """Release what ``setup`` created. Override in subclasses."""

    def print_banner(self) -> None:
        self.console.print(
            f"{self.api} {self.sample_name} connected, and running. Press [ENTER] to quit.",
            markup=False,
            highlight=False,
        )

    async def _open(self) -> None:
        self.lifecycle.advance(DriverState.CONNECTING)
        await self.call(self.transport.connect)
        self._events_open = True
        self._event_task = asyncio.create_task(self._pump_events())
        await self.setup()
        self.lifecycle.advance(DriverState.RUNNING)
        self.print_banner()

    async def _run(self, duration_seconds: float) -> None:
        background: list[asyncio.Task] = []
        if self.periodic_stats:
            background.append(asyncio.create_task(self.sampler.run(self.latch)))
        if duration_seconds > 0:

            async def stop_after() -> None:
                await asyncio.sleep(duration_seconds)
                self.request_stop("duration reached")

            background.append(asyncio.create_task(stop_after()))

        try:
            await self.main_loop()
        except asyncio.CancelledError:
            self.request_stop("interrupted")
            raise
        finally:
            # The stats sampler stops before anything else is torn down
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

    async def _close(self) -> None:
        if self.lifecycle.state is DriverState.RUNNING:
            self.lifecycle.advance(DriverState.DRAINING)
        try:
            await self.teardown()
        finally:
            await self._close_events()
            await self.call(self.transport.disconnect)
            self.lifecycle.advance(DriverState.CLOSED)
            self.console.print("Main thread quitting.", highlight=False)
            shutdown_executor()

    def result(self, duration_seconds: float) -> ExecutionResult:
        counters = self.counters
        return ExecutionResult(
            messages_published=counters.total_sent,
            messages_received=counters.total_received,
            redeliveries=counters.total_redelivered,
            nacks=counters.nacks,
            ack_timeouts=counters.ack_timeouts,
            commits=counters.commits,
            commit_failures=counters.commit_failures,
            duration_seconds=duration_seconds,
            final_state=self.lifecycle.state,
            shutdown_reason=self.latch.reason,
        )

    async def execute(
        self, duration_seconds: float = 0, message_limit: int = 0
    ) -> ExecutionResult:
        """Run the driver with signal and stdin handling until shutdown completes."""
        loop = asyncio.get_running_loop()
        self.message_limit = message_limit
        start_time = time.monotonic()

        cleanup: list[Callable[[], None]] = []
        if self._handle_signals:
            cleanup.append(self._install_signal_handlers(loop))
        stop_watching = self._watch_stdin(loop)
        if stop_watching is not None:
            cleanup.append(stop_watching)

        try:
            await self._open()
            await self._run(duration_seconds)
        finally:
            try:
                await self._close()
            finally:
                for undo in cleanup:
                    undo()

        return self.result(time.monotonic() - start_time)


def default_stdin() -> IO[str] | None:
    """Standard input when it is interactive or a pipe, else None."""
    if sys.stdin is None or getattr(sys.stdin, "closed", False):
        return None
    return sys.stdin
