from __future__ import annotations

import asyncio

import pytest

from mbble.core.errors import (
    CommandTimeoutError,
    CommandWriteError,
    DisconnectedError,
    InvalidParameterError,
    TransportSendError,
)
from mbble.core.events import EventEmitter
from mbble.core.model import CommandResponse
from mbble.core.sequencer import CommandSequencer


class RecordingWriter:
    def __init__(self) -> None:
        self.frames: list[bytes] = []
        self.errors: list[Exception] = []

    async def __call__(self, frame: bytes) -> None:
        self.frames.append(frame)
        if self.errors:
            raise self.errors.pop(0)


async def drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_responses_complete_in_issue_order_and_stale_ones_are_ignored() -> None:
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    first = sequencer.enqueue(2)
    second = sequencer.enqueue(3)
    third = sequencer.enqueue(4)
    await drain()
    assert writer.frames == [bytes([0, 2])]

    sequencer.on_response(bytes([1, 0]))
    await drain()
    assert not first.done()
    assert sequencer.stale_responses == 1
    assert writer.frames == [bytes([0, 2])]

    sequencer.on_response(bytes([0, 0, 0xAA]))
    assert first.result() == CommandResponse(sequence=0, status=0, data=b"\xaa")
    await drain()
    assert writer.frames[-1] == bytes([1, 3])

    sequencer.on_response(bytes([1, 0]))
    assert second.result().sequence == 1
    await drain()
    assert writer.frames == [bytes([0, 2]), bytes([1, 3]), bytes([2, 4])]

    sequencer.on_response(bytes([2, 0]))
    assert (await third).sequence == 2
    assert sequencer.pending == 0


@pytest.mark.asyncio
async def test_at_most_one_command_is_in_flight() -> None:
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    futures = [sequencer.enqueue(opcode) for opcode in range(4)]
    for sequence in range(4):
        await drain()
        assert len(sequencer.in_flight) == 1
        assert sequencer.in_flight[0].sequence == sequence
        sequencer.on_response(bytes([sequence, 0]))
    await drain()
    assert sequencer.in_flight == ()
    assert [f.result().sequence for f in futures] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_timeout_fails_head_and_sends_next() -> None:
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=0.01)
    first = sequencer.enqueue(2)
    second = sequencer.enqueue(3, timeout_s=5.0)

    with pytest.raises(CommandTimeoutError) as excinfo:
        await first
    assert excinfo.value.sequence == 0
    await drain()
    assert sequencer.pending == 1
    assert writer.frames == [bytes([0, 2]), bytes([1, 3])]

    # A late answer for the timed out command must not complete the new head.
    sequencer.on_response(bytes([0, 0]))
    assert not second.done()
    sequencer.on_response(bytes([1, 0]))
    assert (await second).sequence == 1


@pytest.mark.asyncio
async def test_write_failure_fails_head_and_advances() -> None:
    writer = RecordingWriter()
    writer.errors.append(TransportSendError("Write failed"))
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    first = sequencer.enqueue(2)
    second = sequencer.enqueue(3)

    with pytest.raises(CommandWriteError) as excinfo:
        await first
    assert isinstance(excinfo.value.__cause__, TransportSendError)
    await drain()
    assert writer.frames == [bytes([0, 2]), bytes([1, 3])]
    sequencer.on_response(bytes([1, 0]))
    assert (await second).ok


@pytest.mark.asyncio
async def test_many_write_failures_do_not_recurse() -> None:
    writer = RecordingWriter()
    writer.errors.extend(TransportSendError("Write failed") for _ in range(50))
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    futures = [sequencer.enqueue(1) for _ in range(50)]
    results = await asyncio.gather(*futures, return_exceptions=True)
    assert all(isinstance(result, CommandWriteError) for result in results)
    assert sequencer.pending == 0


@pytest.mark.asyncio
async def test_response_during_write_does_not_arm_timer() -> None:
    sequencer: CommandSequencer

    async def answering_writer(frame: bytes) -> None:
        sequencer.on_response(bytes([frame[0], 0]))

    sequencer = CommandSequencer(answering_writer, default_timeout_s=0.01)
    response = await sequencer.command(5, b"\x01")
    assert response.sequence == 0
    await asyncio.sleep(0.03)
    assert sequencer.pending == 0


@pytest.mark.asyncio
async def test_close_fails_pending_and_refuses_new_commands() -> None:
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    first = sequencer.enqueue(2)
    second = sequencer.enqueue(3)
    await drain()

    sequencer.close("Link lost")
    for future in (first, second):
        with pytest.raises(DisconnectedError):
            await future
    assert sequencer.pending == 0
    assert sequencer.closed
    with pytest.raises(DisconnectedError):
        sequencer.enqueue(4)


@pytest.mark.asyncio
async def test_sequence_wraps_modulo_256() -> None:
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=5.0)
    futures = [sequencer.enqueue(1) for _ in range(257)]
    assert sequencer.next_sequence == 1
    sequencer.close()
    await asyncio.gather(*futures, return_exceptions=True)


@pytest.mark.asyncio
async def test_short_or_unsolicited_responses_are_ignored() -> None:
    sequencer = CommandSequencer(RecordingWriter(), default_timeout_s=5.0)
    sequencer.on_response(b"\x00")
    sequencer.on_response(bytes([0, 0]))
    assert sequencer.stale_responses == 2


@pytest.mark.asyncio
async def test_params_are_appended_and_send_command_emitted() -> None:
    events = EventEmitter()
    sent: list[bytes] = []
    events.subscribe("sendCommand", sent.append)
    writer = RecordingWriter()
    sequencer = CommandSequencer(writer, default_timeout_s=5.0, events=events)
    future = sequencer.enqueue(2, bytes([1, 7, 0x01, 0x02, 2]))
    await drain()
    assert sent == writer.frames == [bytes([0, 2, 1, 7, 0x01, 0x02, 2])]
    sequencer.on_response(bytes([0, 0]))
    await future


@pytest.mark.asyncio
async def test_opcode_must_fit_a_byte() -> None:
    sequencer = CommandSequencer(RecordingWriter())
    with pytest.raises(InvalidParameterError):
        sequencer.enqueue(256)
