import asyncio
import tempfile
import unittest

from errors import DialError, PeerUnavailable
from events import EventType, SessionStatus
from identity.identity import IdentityService
from rendezvous.memory import MemoryHub, MemoryRendezvous
from session.messages import FileEnd, PairRequest
from session.models import ConnectionState, SessionState
from session.peer import PeerSession
from support import EventRecorder, FAST_POLICY, make_session, pair_sessions


class ReassigningRendezvous(MemoryRendezvous):
    """Hands out its own identity instead of the one requested."""

    async def register(self, identity, on_incoming, on_lost):
        return await super().register("GT-ASSIGN", on_incoming, on_lost)


class BringUpTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.hub = MemoryHub()
        self.session = make_session(self.hub, self._tmp.name)
        self.recorder = EventRecorder(self.session.events)

    async def asyncTearDown(self):
        await self.session.stop()
        self._tmp.cleanup()

    def statuses(self):
        return [p.status for p in self.recorder.of(EventType.STATUS)]

    async def test_registers_and_goes_online(self):
        identity = self.session.current_identity()
        await self.session.start()

        self.assertEqual(await self.session.wait_ready(), SessionState.ONLINE)
        self.assertEqual(self.statuses(), [SessionStatus.CONNECTING, SessionStatus.ONLINE])
        self.assertEqual(self.recorder.of(EventType.READY)[0].identity, identity)
        self.assertTrue(self.hub.is_registered(identity))

    async def test_conflict_regenerates_identity(self):
        taken = self.session.current_identity()
        self.hub.claim(taken)

        await self.session.start()
        await self.session.wait_ready()

        current = self.session.current_identity()
        self.assertNotEqual(current, taken)
        self.assertEqual(IdentityService(self._tmp.name).current_identity(), current)
        self.assertEqual(self.session.state, SessionState.ONLINE)
        self.assertNotIn(SessionStatus.RECONNECTING, self.statuses())

    async def test_conflicts_do_not_use_retry_budget(self):
        rendezvous = self.session.connections._rendezvous
        self.hub.fail_registrations = FAST_POLICY.max_retries
        # Conflict on top of a full budget of transport failures still succeeds
        self.hub.claim(self.session.current_identity())

        await self.session.start()
        self.assertEqual(await self.session.wait_ready(), SessionState.ONLINE)
        self.assertEqual(len(rendezvous.register_attempts), FAST_POLICY.max_retries + 2)

    async def test_transport_failures_retry_with_same_identity(self):
        identity = self.session.current_identity()
        self.hub.fail_registrations = 2

        await self.session.start()
        await self.session.wait_ready()

        rendezvous = self.session.connections._rendezvous
        self.assertEqual(rendezvous.register_attempts, [identity] * 3)
        self.assertEqual(self.session.current_identity(), identity)
        self.assertEqual(
            self.statuses(),
            [
                SessionStatus.CONNECTING,
                SessionStatus.RECONNECTING,
                SessionStatus.RECONNECTING,
                SessionStatus.ONLINE,
            ],
        )

    async def test_exhaustion_regenerates_once_then_goes_offline(self):
        first = self.session.current_identity()
        self.hub.fail_registrations = 1000

        await self.session.start()
        self.assertEqual(await self.session.wait_ready(), SessionState.EXHAUSTED)

        attempts = self.session.connections._rendezvous.register_attempts
        per_round = FAST_POLICY.max_retries + 1
        self.assertEqual(len(attempts), per_round * 2)
        self.assertEqual(set(attempts[:per_round]), {first})
        second = attempts[per_round]
        self.assertNotEqual(second, first)
        self.assertEqual(set(attempts[per_round:]), {second})

        self.assertEqual(self.statuses()[-1], SessionStatus.OFFLINE)
        self.assertEqual(len(self.recorder.of(EventType.ERROR)), 1)

        # No further automatic attempts
        await asyncio.sleep(0.1)
        self.assertEqual(len(attempts), per_round * 2)

    async def test_restart_after_offline(self):
        self.hub.fail_registrations = 1000
        await self.session.start()
        await self.session.wait_ready()

        self.hub.fail_registrations = 0
        await self.session.restart()
        self.assertEqual(await self.session.wait_ready(), SessionState.ONLINE)

    async def test_assigned_identity_is_adopted(self):
        session = PeerSession(
            ReassigningRendezvous(self.hub), self._tmp.name, retry_policy=FAST_POLICY
        )
        recorder = EventRecorder(session.events)
        await session.start()
        try:
            self.assertEqual(await session.wait_ready(), SessionState.ONLINE)
            self.assertEqual(session.current_identity(), "GT-ASSIGN")
            self.assertEqual(recorder.of(EventType.READY)[0].identity, "GT-ASSIGN")
            self.assertEqual(IdentityService(self._tmp.name).current_identity(), "GT-ASSIGN")
            self.assertTrue(self.hub.is_registered("GT-ASSIGN"))
        finally:
            await session.stop()

    async def test_liveness_loss_reconnects_with_same_identity(self):
        await self.session.start()
        await self.session.wait_ready()
        identity = self.session.current_identity()

        self.hub.drop(identity)
        await self.recorder.wait_for(EventType.READY, count=2)

        self.assertEqual(self.recorder.of(EventType.READY)[1].identity, identity)
        self.assertIn(SessionStatus.RECONNECTING, self.statuses())
        self.assertEqual(self.session.state, SessionState.ONLINE)


class DialTests(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self._tmp_a = tempfile.TemporaryDirectory()
        self._tmp_b = tempfile.TemporaryDirectory()
        self.hub = MemoryHub()
        self.a = make_session(self.hub, self._tmp_a.name)
        self.b = make_session(self.hub, self._tmp_b.name)
        self.a_events = EventRecorder(self.a.events)
        self.b_events = EventRecorder(self.b.events)

    async def asyncTearDown(self):
        await self.a.stop()
        await self.b.stop()
        self._tmp_a.cleanup()
        self._tmp_b.cleanup()

    async def start_both(self):
        await self.a.start()
        await self.b.start()
        await self.a.wait_ready()
        await self.b.wait_ready()

    async def test_self_dial_never_opens_channel(self):
        await self.start_both()
        with self.assertRaises(DialError) as ctx:
            await self.a.dial(self.a.current_identity().lower())
        self.assertEqual(ctx.exception.reason, DialError.SELF_DIAL)
        self.assertEqual(self.a.connections._rendezvous.dial_count, 0)
        self.assertEqual(self.a.connection_list(), [])

    async def test_dial_before_online_is_not_ready(self):
        with self.assertRaises(DialError) as ctx:
            await self.a.dial("GT-ZZZZZZ")
        self.assertEqual(ctx.exception.reason, DialError.NOT_READY)

    async def test_dial_unknown_identity(self):
        await self.start_both()
        with self.assertRaises(PeerUnavailable):
            await self.a.dial("GT-ZZZZZZ")
        self.assertIsNone(self.a.connections.get("GT-ZZZZZZ"))

    async def test_duplicate_dial_of_paired_identity(self):
        await self.start_both()
        await pair_sessions(self.a, self.a_events, self.b, self.b_events)

        with self.assertRaises(DialError) as ctx:
            await self.a.dial(self.b.current_identity())
        self.assertEqual(ctx.exception.reason, DialError.DUPLICATE)
        self.assertEqual(len(self.a.connection_list()), 1)
        self.assertEqual(self.a.connections._rendezvous.dial_count, 1)

    async def test_duplicate_dial_while_pending(self):
        await self.start_both()
        await self.a.dial(self.b.current_identity())
        with self.assertRaises(DialError) as ctx:
            await self.a.dial(self.b.current_identity())
        self.assertEqual(ctx.exception.reason, DialError.DUPLICATE)

    async def test_incoming_must_start_with_pair_request(self):
        await self.start_both()
        raw = MemoryRendezvous(self.hub)

        async def ignore(*args):
            pass

        await raw.register("GT-RAW222", ignore, ignore)
        channel = await raw.dial(self.a.current_identity())
        channel.send(FileEnd(file_id="bogus").to_wire())

        event = await self.a_events.wait_for(EventType.DISCONNECTED)
        self.assertEqual(event.identity, "GT-RAW222")
        self.assertTrue(channel.closed)
        self.assertIsNone(self.a.connections.get("GT-RAW222"))
        self.assertEqual(self.a_events.of(EventType.PAIRING_REQUEST), [])

    async def test_unparseable_frames_are_ignored(self):
        await self.start_both()
        raw = MemoryRendezvous(self.hub)

        async def ignore(*args):
            pass

        await raw.register("GT-RAW333", ignore, ignore)
        channel = await raw.dial(self.a.current_identity())
        channel.send("}{ definitely not json")
        channel.send(PairRequest(sender="GT-RAW333").to_wire())

        await self.a_events.wait_for(EventType.PAIRING_REQUEST)
        self.assertFalse(channel.closed)
        self.assertEqual(self.a.connections.get("GT-RAW333").state, ConnectionState.PENDING)

    async def test_disconnect_emits_on_both_sides(self):
        await self.start_both()
        await pair_sessions(self.a, self.a_events, self.b, self.b_events)

        await self.a.disconnect(self.b.current_identity())
        await self.a.disconnect(self.b.current_identity())
        await self.a.disconnect("GT-NOBODY")

        await self.a_events.wait_for(EventType.DISCONNECTED)
        await self.b_events.wait_for(EventType.DISCONNECTED)
        self.assertEqual(self.a.connected_peers(), [])
        self.assertEqual(self.b.connected_peers(), [])
        self.assertEqual(len(self.a_events.of(EventType.DISCONNECTED)), 1)

    async def test_channel_error_surfaces_as_disconnection(self):
        await self.start_both()
        await pair_sessions(self.a, self.a_events, self.b, self.b_events)

        channel = self.a.connections.get(self.b.current_identity()).channel
        channel.fail(ConnectionResetError("link dropped"))

        await self.a_events.wait_for(EventType.DISCONNECTED)
        await self.b_events.wait_for(EventType.DISCONNECTED)
        self.assertEqual(len(self.a_events.of(EventType.ERROR)), 1)
        self.assertFalse(self.a.is_connected(self.b.current_identity()))


if __name__ == "__main__":
    unittest.main()
