"""Shared helpers for the engine tests."""

import asyncio

from events import EventBus, EventType
from rendezvous.memory import MemoryHub, MemoryRendezvous
from session.models import RetryPolicy
from session.peer import PeerSession

FAST_POLICY = RetryPolicy(
    max_retries=3,
    base_delay=0.01,
    max_delay=0.02,
    register_timeout=1.0,
    window=5.0,
)


class EventRecorder:
    """Collects every event emitted on a bus."""

    def __init__(self, events: EventBus):
        self.events: list = []
        events.subscribe(self._record)

    async def _record(self, event_type, payload):
        self.events.append((event_type, payload))

    def of(self, event_type: EventType) -> list:
        return [p for t, p in self.events if t == event_type]

    def types(self) -> list:
        return [t for t, _ in self.events]

    async def wait_for(self, event_type: EventType, count: int = 1, timeout: float = 2.0):
        """Wait until ``count`` events of ``event_type`` arrived; return the last."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.of(event_type)) < count:
            if loop.time() > deadline:
                raise AssertionError(
                    f"Timed out waiting for {count} {event_type.value} event(s); "
                    f"got {self.types()}"
                )
            await asyncio.sleep(0.005)
        return self.of(event_type)[count - 1]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Timed out waiting for condition")
        await asyncio.sleep(0.005)


def make_session(hub: MemoryHub, config_dir, **kwargs) -> PeerSession:
    kwargs.setdefault("retry_policy", FAST_POLICY)
    kwargs.setdefault("reject_grace", 0.01)
    return PeerSession(MemoryRendezvous(hub), config_dir=config_dir, **kwargs)


async def pair_sessions(a: PeerSession, a_events: EventRecorder, b: PeerSession, b_events: EventRecorder) -> None:
    """Dial b from a and have b's user accept."""
    await a.dial(b.current_identity())
    await b_events.wait_for(EventType.PAIRING_REQUEST)
    await b.accept_pairing(a.current_identity())
    await a_events.wait_for(EventType.PAIRED)
