from __future__ import annotations

import threading

import pytest

from thermnode.errors import IdentityAlreadySetError, SensorReadError
from thermnode.state import DeviceFields, DeviceState


def test_new_state_is_empty() -> None:
    snap = DeviceState().read()

    assert snap.identity == ""
    assert snap.last_reading == 0
    assert snap.last_error is None
    assert not snap.has_identity
    assert snap.healthy


def test_record_error_keeps_last_reading_until_next_success() -> None:
    state = DeviceState()
    state.record_reading(21)

    failed = state.record_error(SensorReadError("bus timeout"))
    assert failed.last_reading == 21
    assert isinstance(failed.last_error, SensorReadError)
    assert not failed.healthy

    # Reads of an errored state keep reporting the error.
    assert state.read().last_error is failed.last_error

    recovered = state.record_reading(23)
    assert recovered.last_reading == 23
    assert recovered.last_error is None


def test_identity_is_write_once() -> None:
    state = DeviceState()
    state.set_identity("AA:BB:CC:DD:EE:FF")

    # Same value again is harmless.
    assert state.set_identity("AA:BB:CC:DD:EE:FF").identity == "AA:BB:CC:DD:EE:FF"

    with pytest.raises(IdentityAlreadySetError):
        state.set_identity("11:22:33:44:55:66")
    assert state.read().identity == "AA:BB:CC:DD:EE:FF"


def test_empty_identity_is_rejected() -> None:
    with pytest.raises(ValueError):
        DeviceState().set_identity("")


def test_snapshots_are_immutable_copies() -> None:
    state = DeviceState()
    before = state.record_reading(10)
    state.record_reading(11)

    assert before.last_reading == 10
    with pytest.raises(AttributeError):
        before.last_reading = 12  # type: ignore[misc]


def test_concurrent_writes_never_produce_torn_reads() -> None:
    state = DeviceState()
    stop = threading.Event()
    torn: list[tuple[int, str]] = []

    def _write_pair(n: int) -> None:
        def _apply(fields: DeviceFields) -> None:
            fields.last_reading = n
            fields.last_error = SensorReadError(str(n))

        state.write(_apply)

    _write_pair(0)

    def _writer(offset: int) -> None:
        n = offset
        while not stop.is_set():
            _write_pair(n)
            n += 2

    def _reader() -> None:
        for _ in range(20_000):
            snap = state.read()
            if str(snap.last_error) != str(snap.last_reading):
                torn.append((snap.last_reading, str(snap.last_error)))

    writers = [threading.Thread(target=_writer, args=(i,)) for i in (0, 1)]
    readers = [threading.Thread(target=_reader) for _ in range(2)]
    for t in writers + readers:
        t.start()
    for t in readers:
        t.join()
    stop.set()
    for t in writers:
        t.join()

    assert torn == []
