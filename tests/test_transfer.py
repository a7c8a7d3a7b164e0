import asyncio
import json
import os
import tempfile
import unittest
from unittest import mock

from errors import ConnectionClosedError, TransferError
from events import EventType, TransferDirection
from rendezvous.memory import MemoryHub
from support import EventRecorder, make_session, pair_sessions
from transfer.engine import chunk_count, percent


class HelperTests(unittest.TestCase):

    def test_chunk_count(self):
        self.assertEqual(chunk_count(150000, 65536), 3)
        self.assertEqual(chunk_count(65536, 65536), 1)
        self.assertEqual(chunk_count(65537, 65536), 2)
        self.assertEqual(chunk_count(0, 65536), 0)

    def test_percent(self):
        self.assertEqual(percent(1, 3), 33)
        self.assertEqual(percent(2, 3), 66)
        self.assertEqual(percent(3, 3), 100)
        self.assertEqual(percent(0, 0), 100)


class TransferTests(unittest.IsolatedAsyncioTestCase):

    chunk_size = 65536
    high_water = 4 * 1024 * 1024

    async def asyncSetUp(self):
        self._tmp_a = tempfile.TemporaryDirectory()
        self._tmp_b = tempfile.TemporaryDirectory()
        self._files = tempfile.TemporaryDirectory()
        self.hub = MemoryHub()
        options = dict(chunk_size=self.chunk_size, high_water=self.high_water)
        self.a = make_session(self.hub, self._tmp_a.name, **options)
        self.b = make_session(self.hub, self._tmp_b.name, **options)
        self.a_events = EventRecorder(self.a.events)
        self.b_events = EventRecorder(self.b.events)
        await self.a.start()
        await self.b.start()
        await self.a.wait_ready()
        await self.b.wait_ready()
        self.a_id = self.a.current_identity()
        self.b_id = self.b.current_identity()
        await pair_sessions(self.a, self.a_events, self.b, self.b_events)

    async def asyncTearDown(self):
        await self.a.stop()
        await self.b.stop()
        for tmp in (self._tmp_a, self._tmp_b, self._files):
            tmp.cleanup()

    def make_file(self, name: str, data: bytes) -> str:
        path = os.path.join(self._files.name, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def channel_to_b(self):
        return self.a.connections.get(self.b_id).channel

    def spy_frames(self) -> list:
        channel = self.channel_to_b()
        frames = []
        original = channel.send

        def send(data):
            frames.append(data)
            original(data)

        channel.send = send
        return frames

    async def test_round_trip_frames(self):
        data = os.urandom(150000)
        path = self.make_file("clip.mp4", data)
        frames = self.spy_frames()

        sent = await self.a.send_files(self.b_id, [path])
        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)

        self.assertEqual(len(sent), 1)
        self.assertEqual(len(frames), 5)
        start = json.loads(frames[0])
        self.assertEqual(start["type"], "file-start")
        self.assertEqual(start["name"], "clip.mp4")
        self.assertEqual(start["size"], 150000)
        self.assertEqual(start["mimeType"], "video/mp4")
        self.assertEqual(start["chunkCount"], 3)
        self.assertEqual([len(f) for f in frames[1:4]], [65536, 65536, 18928])
        end = json.loads(frames[4])
        self.assertEqual(end, {"type": "file-end", "fileId": start["fileId"]})

        self.assertEqual(received.payload, data)
        self.assertEqual(received.name, "clip.mp4")
        self.assertEqual(received.mime_type, "video/mp4")
        self.assertEqual(received.from_identity, self.a_id)

        file_sent = self.a_events.of(EventType.FILE_SENT)
        self.assertEqual(file_sent[0].to_identity, self.b_id)
        self.assertEqual(file_sent[0].file_id, start["fileId"])

    async def test_send_requires_pairing(self):
        path = self.make_file("a.txt", b"hello")
        with self.assertRaises(TransferError) as ctx:
            await self.a.send_files("GT-NOBODY", [path])
        self.assertEqual(ctx.exception.reason, TransferError.NOT_PAIRED)

    async def test_unreadable_file_is_skipped(self):
        missing = os.path.join(self._files.name, "missing.bin")
        good = self.make_file("good.txt", b"still here")

        sent = await self.a.send_files(self.b_id, [missing, good])
        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)

        self.assertEqual([t.name for t in sent], ["good.txt"])
        self.assertEqual(received.payload, b"still here")
        self.assertEqual(len(self.a_events.of(EventType.ERROR)), 1)
        self.assertIn("missing.bin", self.a_events.of(EventType.ERROR)[0].message)

    async def test_progress_is_monotonic_and_finishes_at_100(self):
        path = self.make_file("five.bin", os.urandom(self.chunk_size * 4 + 10))

        await self.a.send_files(self.b_id, [path])
        await self.b_events.wait_for(EventType.FILE_COMPLETE)

        for recorder, direction in (
            (self.a_events, TransferDirection.SENDING),
            (self.b_events, TransferDirection.RECEIVING),
        ):
            with self.subTest(direction=direction):
                progress = recorder.of(EventType.PROGRESS)
                self.assertEqual([p.percent for p in progress], [20, 40, 60, 80, 100])
                self.assertEqual({p.direction for p in progress}, {direction})
                self.assertEqual(progress[-1].done, progress[-1].total)

    async def test_zero_length_file(self):
        path = self.make_file("empty.txt", b"")
        frames = self.spy_frames()

        await self.a.send_files(self.b_id, [path])
        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)

        self.assertEqual(len(frames), 2)
        self.assertEqual(json.loads(frames[0])["chunkCount"], 0)
        self.assertEqual(received.payload, b"")
        self.assertEqual(self.a_events.of(EventType.PROGRESS)[-1].percent, 100)
        self.assertEqual(self.b_events.of(EventType.PROGRESS)[-1].percent, 100)

    async def test_sends_on_one_connection_are_serialized(self):
        first = self.make_file("first.bin", os.urandom(self.chunk_size * 3))
        second = self.make_file("second.bin", os.urandom(self.chunk_size * 2))

        await asyncio.gather(
            self.a.send_files(self.b_id, [first]),
            self.a.send_files(self.b_id, [second]),
        )
        await self.b_events.wait_for(EventType.FILE_COMPLETE, count=2)

        names = [e.name for e in self.b_events.of(EventType.FILE_COMPLETE)]
        self.assertEqual(names, ["first.bin", "second.bin"])

        types = [
            t for t in self.a_events.types()
            if t in (EventType.TRANSFER_STARTED, EventType.FILE_SENT)
        ]
        self.assertEqual(types, [
            EventType.TRANSFER_STARTED,
            EventType.FILE_SENT,
            EventType.TRANSFER_STARTED,
            EventType.FILE_SENT,
        ])

    async def test_read_failure_aborts_file_and_continues(self):
        broken = self.make_file("broken.bin", os.urandom(self.chunk_size * 2))
        good = self.make_file("good.bin", b"intact")
        real_to_thread = asyncio.to_thread
        calls = []

        async def flaky_to_thread(func, *args, **kwargs):
            calls.append(func)
            if len(calls) == 1:
                raise OSError("disk went away")
            return await real_to_thread(func, *args, **kwargs)

        with mock.patch("transfer.engine.asyncio.to_thread", flaky_to_thread):
            sent = await self.a.send_files(self.b_id, [broken, good])

        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)
        await self.b_events.wait_for(EventType.ERROR)

        self.assertEqual([t.name for t in sent], ["good.bin"])
        self.assertEqual(received.name, "good.bin")
        self.assertEqual(received.payload, b"intact")
        self.assertEqual(len(self.b_events.of(EventType.FILE_COMPLETE)), 1)
        self.assertIn("aborted", self.b_events.of(EventType.ERROR)[0].message)
        self.assertEqual(len(self.a_events.of(EventType.ERROR)), 1)


class FlowControlTests(TransferTests):
    """Runs the transfer scenarios again with tiny chunks and buffer."""

    chunk_size = 1024
    high_water = 4096

    async def test_round_trip_frames(self):
        data = os.urandom(10000)
        path = self.make_file("notes.txt", data)

        await self.a.send_files(self.b_id, [path])
        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)

        self.assertEqual(received.payload, data)
        self.assertEqual(received.mime_type, "text/plain")

    async def test_sender_pauses_above_high_water(self):
        path = self.make_file("big.bin", os.urandom(self.chunk_size * 10))
        channel = self.channel_to_b()
        channel.hold()

        task = asyncio.create_task(self.a.send_files(self.b_id, [path]))
        await asyncio.sleep(0.05)

        # file-start plus four chunks crosses the mark
        self.assertEqual(len(self.a_events.of(EventType.PROGRESS)), 4)
        self.assertGreater(channel.queued_bytes, self.high_water)
        self.assertFalse(task.done())
        self.assertEqual(self.b_events.of(EventType.PROGRESS), [])
        self.assertEqual(self.a.connection_list()[0].sending, "big.bin")

        channel.release()
        await task
        received = await self.b_events.wait_for(EventType.FILE_COMPLETE)
        self.assertEqual(len(received.payload), self.chunk_size * 10)
        self.assertEqual(len(self.a_events.of(EventType.PROGRESS)), 10)
        self.assertIsNone(self.a.connection_list()[0].sending)

    async def test_close_mid_transfer(self):
        path = self.make_file("big.bin", os.urandom(self.chunk_size * 10))
        self.channel_to_b().hold()

        task = asyncio.create_task(self.a.send_files(self.b_id, [path]))
        await asyncio.sleep(0.05)
        self.assertFalse(task.done())

        await self.b.disconnect(self.a_id)

        with self.assertRaises(ConnectionClosedError):
            await task
        await self.a_events.wait_for(EventType.DISCONNECTED)
        self.assertEqual(self.b_events.of(EventType.FILE_COMPLETE), [])
        self.assertEqual(self.a_events.of(EventType.FILE_SENT), [])

    async def test_partial_inbound_file_dropped_on_close(self):
        path = self.make_file("long.bin", os.urandom(self.chunk_size * 50))
        receiving = self.b.connections.get(self.a_id)
        inbound_at_cut = []

        async def cut_after_five_chunks(event_type, event):
            if event.direction == TransferDirection.RECEIVING and event.done == 5 and not inbound_at_cut:
                inbound_at_cut.append(dict(receiving.inbound))
                await self.a.disconnect(self.b_id)

        self.b.events.subscribe(cut_after_five_chunks, types=[EventType.PROGRESS])
        task = asyncio.create_task(self.a.send_files(self.b_id, [path]))

        with self.assertRaises(ConnectionClosedError):
            await task
        await self.b_events.wait_for(EventType.DISCONNECTED)

        self.assertEqual(len(inbound_at_cut), 1)
        self.assertEqual([t.name for t in inbound_at_cut[0].values()], ["long.bin"])
        self.assertEqual(receiving.inbound, {})
        self.assertEqual(self.b_events.of(EventType.FILE_COMPLETE), [])


if __name__ == "__main__":
    unittest.main()
