"""
Retry driver for the widget extractor.

The IHF widget renders asynchronously and re-renders on internal navigation, so a
single extraction pass usually sees an empty shell. ExtractionScheduler keeps
trying on a fixed delay and also re-tries shortly after the DOM reports added
nodes, until a valid record appears or the attempt budget runs out.

    Idle → Attempting(count) → Success(record) | Exhausted(count)

Exhaustion is a normal outcome: it is logged and surfaced through `state`,
never raised.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Set, Union

from backend.idx.config import IMAGE_CAP, INITIAL_DELAY_MS, MAX_ATTEMPTS, RETRY_DELAY_MS, SETTLE_DELAY_MS
from backend.idx.parsing import PageSnapshot, extract_property
from backend.py_models.property import PropertyRecord

log = logging.getLogger("idx.scheduler")

MutationCallback = Callable[[int], None]
SuccessSink = Callable[[PropertyRecord], Union[None, Awaitable[None]]]
Extractor = Callable[[PageSnapshot, int], Optional[PropertyRecord]]


# --- dom change stream --------------------------------------------------------

class Subscription:
    def __init__(self, stream: "MutationStream", callback: MutationCallback):
        self._stream = stream
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._stream._remove(self._callback)


class MutationStream:
    """'DOM changed' notifications; each carries the number of added nodes."""

    def __init__(self):
        self._listeners: List[MutationCallback] = []

    def subscribe(self, callback: MutationCallback) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: MutationCallback) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, added_nodes: int) -> None:
        for cb in list(self._listeners):
            try:
                cb(added_nodes)
            except Exception:
                log.exception("MUTATION LISTENER FAILED")


class DomSource(Protocol):
    changes: MutationStream

    async def snapshot(self) -> PageSnapshot: ...


class StaticDomSource:
    """A fixed page (saved HTML); never reports mutations."""

    def __init__(self, snapshot: PageSnapshot):
        self._snapshot = snapshot
        self.changes = MutationStream()

    async def snapshot(self) -> PageSnapshot:
        return self._snapshot


# --- state --------------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Attempting:
    count: int


@dataclass(frozen=True)
class Success:
    record: PropertyRecord
    count: int


@dataclass(frozen=True)
class Exhausted:
    count: int


SchedulerState = Union[Idle, Attempting, Success, Exhausted]


class ExtractionScheduler:
    def __init__(
        self,
        source: DomSource,
        *,
        extract: Extractor = extract_property,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_MS / 1000,
        settle_delay: float = SETTLE_DELAY_MS / 1000,
        initial_delay: float = INITIAL_DELAY_MS / 1000,
        image_cap: int = IMAGE_CAP,
        sinks: Optional[List[SuccessSink]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.source = source
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.settle_delay = settle_delay
        self.initial_delay = initial_delay
        self.image_cap = image_cap
        self._extract = extract
        self._sinks: List[SuccessSink] = list(sinks or [])

        self._state: SchedulerState = Idle()
        self._attempts = 0
        self._succeeded = False
        self._live = True
        self._mutation_pending = False
        self._timers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()

    # --- public ---------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def record(self) -> Optional[PropertyRecord]:
        return self._state.record if isinstance(self._state, Success) else None

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def add_sink(self, sink: SuccessSink) -> None:
        self._sinks.append(sink)

    def start(self) -> None:
        """Begin attempting. Must be called from inside the running event loop."""
        if not self._live or not isinstance(self._state, Idle):
            return
        self._loop = asyncio.get_running_loop()
        self._state = Attempting(0)
        self._subscription = self.source.changes.subscribe(self._on_mutation)
        self._schedule(self.initial_delay, "timer")
        log.info(
            "EXTRACT START | max_attempts=%d retry=%.2fs settle=%.2fs",
            self.max_attempts,
            self.retry_delay,
            self.settle_delay,
        )

    async def wait(self, timeout: Optional[float] = None) -> SchedulerState:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self._state

    async def run(self, timeout: Optional[float] = None) -> Optional[PropertyRecord]:
        self.start()
        await self.wait(timeout)
        return self.record

    def close(self) -> None:
        """Tear down: cancel timers and in-flight attempts; late callbacks become no-ops."""
        if not self._live:
            return
        self._live = False
        self._release()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self._done.set()
        log.debug("EXTRACT CLOSED | state=%s attempts=%d", type(self._state).__name__, self._attempts)

    # --- internals ------------------------------------------------------------

    def _terminal(self) -> bool:
        return isinstance(self._state, (Success, Exhausted))

    def _schedule(self, delay: float, trigger: str) -> asyncio.TimerHandle:
        handle: Optional[asyncio.TimerHandle] = None

        def _fire():
            self._timers.discard(handle)
            if trigger == "mutation":
                self._mutation_pending = False
            if not self._live or self._terminal():
                return
            task = self._loop.create_task(self._attempt(trigger))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle = self._loop.call_later(max(delay, 0), _fire)
        self._timers.add(handle)
        return handle

    def _on_mutation(self, added_nodes: int) -> None:
        if added_nodes <= 0 or self._loop is None:
            return
        if not self._live or self._terminal() or self._mutation_pending:
            return
        self._mutation_pending = True
        self._schedule(self.settle_delay, "mutation")

    def _release(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._mutation_pending = False
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _attempt(self, trigger: str) -> None:
        async with self._lock:
            if not self._live or self._terminal():
                return
            self._attempts += 1
            n = self._attempts
            self._state = Attempting(n)

            record = None
            try:
                snapshot = await self.source.snapshot()
                record = self._extract(snapshot, self.image_cap)
            except Exception as e:
                # the page may be mid-navigation; this attempt simply found nothing
                log.warning("EXTRACT ERROR | attempt=%d trigger=%s err=%s", n, trigger, e)

            if not self._live:
                return
            if record is not None:
                await self._succeed(record)
                return

            log.debug("EXTRACT MISS | attempt=%d/%d trigger=%s", n, self.max_attempts, trigger)
            if n >= self.max_attempts:
                self._exhaust()
            elif trigger == "timer":
                self._schedule(self.retry_delay, "timer")

    async def _succeed(self, record: PropertyRecord) -> None:
        if self._succeeded:
            return
        self._succeeded = True
        self._state = Success(record, self._attempts)
        self._release()
        log.info(
            "EXTRACT SUCCESS | attempt=%d address=%r mls_id=%s price=%s images=%d",
            self._attempts,
            record.address,
            record.mls_id,
            record.price,
            len(record.images),
        )
        for sink in list(self._sinks):
            try:
                result = sink(record)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("BROADCAST FAILED | sink=%r", sink)
        self._done.set()

    def _exhaust(self) -> None:
        self._state = Exhausted(self._attempts)
        self._release()
        log.warning("EXTRACT EXHAUSTED | attempts=%d no property data available", self._attempts)
        self._done.set()
