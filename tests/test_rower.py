import threading
import time
from unittest.mock import Mock

import pytest

from src.gym.gym import GymEvent, GymState
from src.gym.program import Difficulty, Program
from src.rower.link import SerialByteSource, SourceExhaustedError
from src.rower.rower import Rower


@pytest.fixture
def rower(source, gym, trace, clock):
    return Rower(source, gym, trace, clock)


def select(gym, program):
    gym.select(gym.merge_program(program))


def test_poll_without_input(rower):
    assert rower.poll() is None

def test_poll_evaluates_decoded_frames(rower, source, gym):
    select(gym, Program.meters("10 m", 10, Difficulty.EASY))
    callback = Mock()
    rower.register_callback(callback)

    source.setup_input([0xFF, 0x18, 0x28, 0xFE, 0x14])
    assert rower.poll() is GymEvent.PROGRAM_START
    callback.assert_called_once_with(GymEvent.PROGRAM_START)
    assert gym.measurement.distance == 2
    assert gym.measurement.speed == 400

    rower.remove_callback(callback)
    source.setup_input([0xFE, 0x50])
    assert rower.poll() is GymEvent.PROGRAM_FINISHED
    callback.assert_called_once()
    assert gym.finished.distance == 10

def test_selection_starts_decoding_afresh(rower, source, gym):
    source.setup_input([0xFE, 0x05])
    rower.poll()
    assert gym.measurement.distance == 0

    select(gym, Program.meters("1 km", 1000, Difficulty.EASY))
    source.setup_input([0xFE, 0x05])
    rower.poll()
    # The 5 dm left over from before the selection are not carried into the new session
    assert gym.measurement.distance == 0
    assert gym.state is GymState.SELECTED

def test_incomplete_frame_propagates(rower, source, gym):
    source.setup_input([0xFE, 0x0A, 0xFF, 0x01])
    with pytest.raises(SourceExhaustedError):
        rower.poll()
    assert gym.measurement.distance == 1
    assert gym.measurement.stroke_rate == 0

    source.setup_input([0x02])
    rower.poll()
    assert gym.measurement.stroke_rate == 1
    assert gym.measurement.speed == 20

def test_replay_without_program(rower, gym, golden_trace):
    frames = rower.replay(golden_trace)
    assert frames > 363 * 4
    assert gym.measurement.strokes == 363
    assert gym.measurement.distance == 1510
    assert gym.current is None
    assert gym.state is GymState.IDLE

def test_replay_into_workout(rower, gym, store, golden_trace):
    select(gym, Program.meters("2000 m", 2000, Difficulty.MEDIUM))
    rower.replay(golden_trace)

    assert gym.state is GymState.ACTIVE
    stored = store.lookup_workout(gym.current.id)
    assert stored.distance == 1510
    assert stored.strokes == 363
    assert stored.program_name == "2000 m"
    assert store.get_snapshots(stored)[-1].distance == 1510

def test_replay_finishes_shorter_program(rower, gym, golden_trace):
    select(gym, Program.meters("1000 m", 1000, Difficulty.EASY))
    events = []
    rower.register_callback(events.append)
    rower.replay(golden_trace)

    assert gym.state is GymState.FINISHED
    assert events.count(GymEvent.PROGRAM_START) == 1
    assert events.count(GymEvent.PROGRAM_FINISHED) == 1
    assert 1000 <= gym.finished.distance < 1003
    assert gym.measurement.distance == 1510

def test_replay_needs_buffer_source(gym, golden_trace):
    rower = Rower(SerialByteSource("/dev/ttyUSB9"), gym)
    with pytest.raises(TypeError):
        rower.replay(golden_trace)

def test_polling_thread(rower, source, gym):
    select(gym, Program.meters("5 m", 5, Difficulty.EASY))
    started = threading.Event()
    rower.register_callback(lambda event: event is GymEvent.PROGRAM_START and started.set())

    source.setup_input([0xFE, 0x14])
    rower.start()
    try:
        assert started.wait(timeout=2)
        assert rower.is_connected()
    finally:
        rower.stop()
    assert not rower.thread.is_alive()
    assert not source.is_open


def wait_for(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


def test_polling_survives_store_failure(rower, source, gym, store):
    select(gym, Program.meters("1 km", 1000, Difficulty.EASY))
    store.conn.close()

    source.setup_input([0xFE, 0x14])
    rower.start()
    try:
        assert wait_for(lambda: gym.measurement.distance == 2)
        source.setup_input([0xFE, 0x14])
        assert wait_for(lambda: gym.measurement.distance == 4)
        assert rower.thread.is_alive()
    finally:
        rower.stop()

def test_polling_waits_for_rest_of_frame(rower, source, gym):
    source.setup_input([0xFE])
    rower.start()
    try:
        assert wait_for(lambda: source.pending() == 0)
        time.sleep(0.3)
        assert source.is_open
        source.setup_input([0x19])
        assert wait_for(lambda: gym.measurement.distance == 2)
    finally:
        rower.stop()
