from __future__ import annotations

import asyncio
import errno
import json
import threading

import pytest

from calls.envelope import SignalingEnvelope
from calls.signaling import CallState
from fakes import CountingCaptureDevice, FailingCaptureDevice, FakeNetwork, connected_pair, make_session, settle
from transport.errors import CaptureFailureReason, MediaAcquisitionError, SequencingError
from transport.session import ConnectivityState


class GatedCaptureDevice(CountingCaptureDevice):
    """Capture device whose open blocks until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()

    def open(self, constraints):
        self.gate.wait(timeout=5)
        return super().open(constraints)


def _sent_types(session) -> list[str]:
    return [json.loads(frame)["type"] for frame in session.transport.channel.sent]


def _all_stopped(device: CountingCaptureDevice) -> bool:
    return all(track.readyState == "ended" for track in device.tracks)


async def _ring(alice, bob) -> None:
    assert alice.start_call()
    await settle(alice, bob)


def test_start_call_requires_connected_transport():
    async def scenario():
        alice = make_session(FakeNetwork())

        assert alice.start_call() is False
        assert alice.calls.state is CallState.IDLE
        ignored = [e for e in alice.log.entries(source="call") if e.event == "start-ignored"]
        assert ignored[-1].detail["reason"] == "not-connected"

    asyncio.run(scenario())


def test_start_call_twice_is_a_noop():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)

        assert alice.start_call() is False
        assert _sent_types(alice).count("call-request") == 1

    asyncio.run(scenario())


def test_incoming_call_rings_and_decline_returns_both_to_idle():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)

        assert alice.calls.state is CallState.CALLING
        assert bob.calls.state is CallState.RINGING
        assert bob.calls.incoming_from == "alice"

        bob.decline_call()
        await settle(alice, bob)

        assert bob.calls.state is CallState.IDLE
        assert alice.calls.state is CallState.IDLE
        assert bob.calls.incoming_from is None
        assert alice.media.session is None

    asyncio.run(scenario())


def test_full_call_reaches_active_with_live_media_on_both_sides():
    async def scenario():
        alice_device, bob_device = CountingCaptureDevice(), CountingCaptureDevice()
        alice, bob = await connected_pair(FakeNetwork(), alice_device=alice_device, bob_device=bob_device)

        await _ring(alice, bob)
        await bob.accept_call()
        await settle(alice, bob)

        assert alice.calls.state is CallState.ACTIVE
        assert bob.calls.state is CallState.ACTIVE
        assert alice.calls.has_live_media and bob.calls.has_live_media
        assert sorted(alice.transport.remote_media.kinds()) == ["audio", "video"]
        assert sorted(bob.transport.remote_media.kinds()) == ["audio", "video"]
        assert alice_device.opened == 1 and bob_device.opened == 1
        assert _sent_types(alice) == ["call-request", "call-offer"]
        assert _sent_types(bob) == ["call-accept", "call-answer"]

        assert alice.end_call() is True
        await settle(alice, bob)

        assert alice.calls.state is CallState.IDLE
        assert bob.calls.state is CallState.IDLE
        assert alice.media.session is None and bob.media.session is None
        assert _all_stopped(alice_device) and _all_stopped(bob_device)
        assert not alice.calls.has_live_media
        assert bob.transport.remote_media is None
        pc = alice.transport.peer_connection
        assert all(sender.track is None for sender in pc.getSenders())

    asyncio.run(scenario())


def test_end_call_while_idle_does_nothing():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())

        assert alice.end_call() is False
        await settle(alice, bob)
        assert "call-end" not in _sent_types(alice)
        assert bob.calls.state is CallState.IDLE

    asyncio.run(scenario())


def test_duplicate_call_end_is_ignored():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)
        await bob.accept_call()
        await settle(alice, bob)

        bob.end_call()
        bob.transport.send(SignalingEnvelope.call_end("bob").to_frame())
        await settle(alice, bob)

        released = [e for e in alice.log.entries(source="media") if e.event == "released"]
        assert len(released) == 1
        ignored = [e for e in alice.log.entries(source="call") if e.event == "message-ignored"]
        assert ignored[-1].detail["type"] == "call-end"
        assert alice.calls.state is CallState.IDLE

    asyncio.run(scenario())


def test_transport_failure_ends_active_call_without_notifying():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)
        await bob.accept_call()
        await settle(alice, bob)
        frames_before = len(alice.transport.channel.sent)

        alice.transport.peer_connection.set_connection_state("failed")
        await settle(alice)

        assert alice.transport.connectivity is ConnectivityState.FAILED
        assert alice.calls.state is CallState.IDLE
        assert alice.media.session is None
        assert len(alice.transport.channel.sent) == frames_before
        assert alice.start_call() is False

    asyncio.run(scenario())


def test_call_request_while_busy_is_ignored():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)

        alice.transport.send(SignalingEnvelope.call_request("mallory").to_frame())
        await settle(alice, bob)

        assert bob.calls.state is CallState.RINGING
        assert bob.calls.incoming_from == "alice"
        ignored = [e for e in bob.log.entries(source="call") if e.event == "request-ignored"]
        assert len(ignored) == 1

    asyncio.run(scenario())


def test_accept_without_incoming_call_is_rejected():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())

        with pytest.raises(SequencingError):
            await bob.accept_call()
        with pytest.raises(SequencingError):
            bob.decline_call()

    asyncio.run(scenario())


def test_callee_capture_denial_declines_the_call():
    async def scenario():
        denied = FailingCaptureDevice(PermissionError(errno.EACCES, "Permission denied"))
        alice, bob = await connected_pair(FakeNetwork(), bob_device=denied)
        await _ring(alice, bob)

        with pytest.raises(MediaAcquisitionError) as excinfo:
            await bob.accept_call()
        await settle(alice, bob)

        assert excinfo.value.reason is CaptureFailureReason.PERMISSION_DENIED
        assert _sent_types(bob) == ["call-decline"]
        assert bob.calls.state is CallState.IDLE
        assert alice.calls.state is CallState.IDLE

    asyncio.run(scenario())


def test_caller_capture_failure_declines_and_releases_callee_media():
    async def scenario():
        bob_device = CountingCaptureDevice()
        missing = FailingCaptureDevice(FileNotFoundError(errno.ENOENT, "No such device"))
        alice, bob = await connected_pair(FakeNetwork(), alice_device=missing, bob_device=bob_device)
        await _ring(alice, bob)

        await bob.accept_call()
        await settle(alice, bob)

        assert "call-decline" in _sent_types(alice)
        assert alice.calls.state is CallState.IDLE
        assert bob.calls.state is CallState.IDLE
        assert bob.media.session is None
        assert _all_stopped(bob_device)
        failed = [e for e in alice.log.entries(source="media") if e.event == "capture-failed"]
        assert failed[-1].detail["reason"] == "device_not_found"

    asyncio.run(scenario())


def test_hangup_during_capture_discards_the_pending_offer():
    async def scenario():
        gated = GatedCaptureDevice()
        alice, bob = await connected_pair(FakeNetwork(), alice_device=gated)
        await _ring(alice, bob)
        await bob.accept_call()

        for _ in range(50):
            if alice.calls.state is CallState.CONNECTING:
                break
            await asyncio.sleep(0)
        assert alice.calls.state is CallState.CONNECTING

        alice.end_call()
        gated.gate.set()
        await settle(alice, bob)

        assert "call-offer" not in _sent_types(alice)
        assert alice.calls.state is CallState.IDLE
        assert bob.calls.state is CallState.IDLE
        assert alice.media.session is None
        assert gated.opened == 1 and _all_stopped(gated)
        discarded = [e for e in alice.log.entries(source="call") if e.event == "offer-discarded"]
        assert discarded and discarded[-1].detail["step"] == "capture"

    asyncio.run(scenario())


def test_chat_keeps_flowing_during_a_call():
    async def scenario():
        alice, bob = await connected_pair(FakeNetwork())
        await _ring(alice, bob)
        await bob.accept_call()
        await settle(alice, bob)

        alice.send_chat("can you hear me?")
        await settle(alice, bob)

        assert bob.chat[-1].text == "can you hear me?"
        assert bob.calls.state is CallState.ACTIVE

    asyncio.run(scenario())


def test_second_call_after_hangup_reuses_transceivers_with_live_media():
    async def scenario():
        alice_device, bob_device = CountingCaptureDevice(), CountingCaptureDevice()
        alice, bob = await connected_pair(FakeNetwork(), alice_device=alice_device, bob_device=bob_device)

        for caller, callee in ((alice, bob), (bob, alice)):
            await _ring(caller, callee)
            await callee.accept_call()
            await settle(alice, bob)

            assert alice.calls.state is CallState.ACTIVE and bob.calls.state is CallState.ACTIVE
            assert alice.calls.has_live_media and bob.calls.has_live_media
            assert sorted(alice.transport.remote_media.kinds()) == ["audio", "video"]
            assert sorted(bob.transport.remote_media.kinds()) == ["audio", "video"]

            assert caller.end_call() is True
            await settle(alice, bob)
            assert not alice.calls.has_live_media and not bob.calls.has_live_media

        assert alice_device.opened == 2 and bob_device.opened == 2
        assert len(alice.transport.peer_connection.getSenders()) == 2
        assert len(alice.transport.peer_connection.getReceivers()) == 2

    asyncio.run(scenario())
