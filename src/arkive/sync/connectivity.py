"""Connectivity monitoring.

The platform's "network available" signal is only a hint: a device can be
on a network that cannot reach the database. The monitor therefore keeps
three states and only trusts ONLINE after the remote store has answered a
probe.

State Machine:
    OFFLINE            --notify_online-->   ONLINE_UNVERIFIED (probe scheduled)
    ONLINE_UNVERIFIED  --probe ok-->        ONLINE
    ONLINE_UNVERIFIED  --probe failed-->    ONLINE_UNVERIFIED (retried next tick)
    ONLINE             --probe failed-->    ONLINE_UNVERIFIED
    any                --notify_offline-->  OFFLINE
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from ..api.resilience import with_timeout
from .domain.entities import ConnectivityState
from .domain.ports import IRemoteStore

logger = logging.getLogger(__name__)

TransitionListener = Callable[
    [ConnectivityState, ConnectivityState], Awaitable[None] | None
]


class ConnectivityMonitor:
    """Tracks connectivity and verifies it against the remote store.

    Public methods never block on the network: probes run as background
    tasks and listeners that return awaitables are scheduled, not awaited.

    Example:
        monitor = ConnectivityMonitor(remote, probe_interval=30)
        monitor.add_listener(on_transition)
        monitor.start()
        ...
        monitor.notify_offline()
        await monitor.stop()
    """

    def __init__(
        self,
        remote: IRemoteStore,
        probe_interval: float = 30.0,
        probe_timeout: float = 10.0,
    ):
        self.remote = remote
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout

        self._state = ConnectivityState.OFFLINE
        self._last_verified_at: datetime | None = None
        self._listeners: list[TransitionListener] = []
        self._ticker: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        """True only when the remote store has confirmed reachability."""
        return self._state == ConnectivityState.ONLINE

    @property
    def last_verified_at(self) -> datetime | None:
        return self._last_verified_at

    def add_listener(self, callback: TransitionListener) -> None:
        """Call callback(old_state, new_state) on every transition."""
        self._listeners.append(callback)

    # ----------------------------------------
    # Platform Signals
    # ----------------------------------------

    def notify_online(self) -> None:
        """The platform reports a network; verify it in the background."""
        if self._state == ConnectivityState.OFFLINE:
            self._transition(ConnectivityState.ONLINE_UNVERIFIED)
        self._schedule_probe()

    def notify_offline(self) -> None:
        """The platform reports no network; transmission pauses at once."""
        if self._probe_task and not self._probe_task.done():
            self._probe_task.cancel()
        self._transition(ConnectivityState.OFFLINE)

    # ----------------------------------------
    # Probing
    # ----------------------------------------

    async def probe(self) -> bool:
        """Probe the remote store now and update state from the answer.

        Returns:
            True if the remote store answered
        """
        try:
            reachable = bool(
                await with_timeout(self.remote.probe_connected, self.probe_timeout)
            )
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            reachable = False

        # notify_offline wins over a probe that was already in flight
        if self._state == ConnectivityState.OFFLINE:
            return reachable

        if reachable:
            self._last_verified_at = datetime.now(UTC)
            self._transition(ConnectivityState.ONLINE)
        elif self._state == ConnectivityState.ONLINE:
            logger.warning("Remote store stopped answering, connectivity unverified")
            self._transition(ConnectivityState.ONLINE_UNVERIFIED)
        return reachable

    def _schedule_probe(self) -> None:
        if self._probe_task and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self.probe())

    # ----------------------------------------
    # Lifecycle
    # ----------------------------------------

    def start(self) -> None:
        """Assume a network is present, probe now and every probe_interval."""
        if self._ticker and not self._ticker.done():
            return
        if self._state == ConnectivityState.OFFLINE:
            self._transition(ConnectivityState.ONLINE_UNVERIFIED)
        self._ticker = asyncio.create_task(self._tick())

    async def stop(self) -> None:
        """Cancel the ticker and any in-flight probe."""
        tasks = [t for t in (self._ticker, self._probe_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ticker = None
        self._probe_task = None

    async def _tick(self) -> None:
        while True:
            if self._state != ConnectivityState.OFFLINE:
                self._schedule_probe()
                # wait() returns normally when notify_offline cancels the probe
                await asyncio.wait({self._probe_task})
            await asyncio.sleep(self.probe_interval)

    # ----------------------------------------
    # Transitions
    # ----------------------------------------

    def _transition(self, new_state: ConnectivityState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Connectivity {old_state.value} -> {new_state.value}")

        for callback in list(self._listeners):
            try:
                result = callback(old_state, new_state)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception():
            logger.error(f"Connectivity listener failed: {task.exception()}")
