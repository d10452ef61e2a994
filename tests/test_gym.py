from unittest.mock import Mock

import pytest

from src.gym.gym import Gym, GymEvent, GymState, Progress, CHALLENGE_NAME
from src.gym.measurement import Measurement
from src.gym.program import Difficulty, Location, Program, Segment, Snapshot, Workout


def interval_program() -> Program:
    program = Program("Intervals")
    program.get_segment(0).set_distance(10)
    program.add_segment(Segment(Difficulty.HARD).set_strokes(5).set_stroke_rate(30))
    return program


@pytest.fixture
def selected(gym, store):
    program = store.merge_program(interval_program())
    gym.select(program)
    return gym


def test_initial_state_is_idle(gym):
    assert gym.state is GymState.IDLE
    assert gym.measurement.is_zero()

def test_measurement_without_program_is_acknowledged(gym, store):
    assert gym.on_measured(Measurement(distance=50)) is GymEvent.ACKNOWLEDGED
    assert gym.current is None
    assert store.get_workouts() == []

def test_workout_waits_for_progress(selected, store):
    assert selected.state is GymState.SELECTED
    assert selected.on_measured(Measurement(pulse=80, stroke_rate=10)) is GymEvent.ACKNOWLEDGED
    assert selected.current is None
    assert store.get_workouts() == []

def test_program_start_creates_workout_and_snapshot(selected, store):
    measurement = Measurement(distance=3, strokes=1)
    assert selected.on_measured(measurement) is GymEvent.PROGRAM_START
    assert selected.state is GymState.ACTIVE

    workouts = store.get_workouts()
    assert len(workouts) == 1
    assert workouts[0].program_id == selected.program.id
    assert workouts[0].distance == 3
    assert len(store.get_snapshots(workouts[0])) == 1

def test_duration_alone_starts_the_program(selected):
    assert selected.on_measured(Measurement(duration=1)) is GymEvent.PROGRAM_START

def test_snapshot_only_when_workout_changes(selected, store):
    measurement = Measurement(distance=1)
    selected.on_measured(measurement)
    selected.on_measured(measurement)
    measurement.pulse = 90
    selected.on_measured(measurement)
    measurement.distance = 2
    selected.on_measured(measurement)
    assert len(store.get_snapshots(selected.current)) == 2

def test_segments_advance_relative_to_their_start(selected):
    measurement = Measurement(distance=4, strokes=1)
    assert selected.on_measured(measurement) is GymEvent.PROGRAM_START
    assert selected.completion() == pytest.approx(0.4)

    measurement.distance = 12
    measurement.strokes = 3
    assert selected.on_measured(measurement) is GymEvent.SEGMENT_CHANGED
    assert selected.progress.segment is selected.program.get_segment(1)
    assert selected.completion() == 0.0

    # The stroke target counts from the 3 strokes rowed when the segment began
    measurement.strokes = 7
    assert selected.on_measured(measurement) is GymEvent.ACKNOWLEDGED
    assert selected.completion() == pytest.approx(0.8)

    measurement.strokes = 8
    assert selected.on_measured(measurement) is GymEvent.PROGRAM_FINISHED
    assert selected.state is GymState.FINISHED
    assert selected.progress is None
    assert selected.current is None
    assert selected.finished.strokes == 8

def test_segment_change_is_reported_once(selected):
    measurement = Measurement(distance=1)
    selected.on_measured(measurement)
    measurement.distance = 15
    events = [selected.on_measured(measurement) for _ in range(3)]
    assert events == [GymEvent.SEGMENT_CHANGED, GymEvent.ACKNOWLEDGED, GymEvent.ACKNOWLEDGED]

def test_finished_workout_is_not_updated_again(gym, store):
    gym.select(store.merge_program(Program.meters("Short", 5, Difficulty.EASY)))
    measurement = Measurement(distance=2)
    gym.on_measured(measurement)
    measurement.distance = 6
    assert gym.on_measured(measurement) is GymEvent.PROGRAM_FINISHED

    workout = store.get_workouts()[0]
    snapshots = len(store.get_snapshots(workout))
    measurement.distance = 40
    assert gym.on_measured(measurement) is GymEvent.ACKNOWLEDGED
    assert store.get_workouts()[0].distance == 6
    assert len(store.get_snapshots(workout)) == snapshots
    assert len(store.get_workouts()) == 1

def test_completion_stays_within_bounds():
    progress = Progress(Segment().set_distance(100), Measurement(distance=50))
    assert progress.completion(Measurement(distance=10)) == 0.0
    assert progress.completion(Measurement(distance=100)) == 0.5
    assert progress.completion(Measurement(distance=500)) == 1.0

def test_segment_without_target_never_completes(gym):
    gym.select(Program("Empty"))
    measurement = Measurement(distance=1)
    gym.on_measured(measurement)
    measurement.distance = 10000
    assert gym.on_measured(measurement) is GymEvent.ACKNOWLEDGED
    assert gym.completion() == 0.0
    assert gym.state is GymState.ACTIVE

def test_progress_start_is_a_copy():
    start = Measurement(distance=10)
    progress = Progress(Segment().set_distance(10), start)
    start.distance = 15
    assert progress.achieved(Measurement(distance=15)) == 5

def test_limits_compare_instantaneous_values(selected):
    measurement = Measurement(distance=1)
    selected.on_measured(measurement)
    assert selected.in_limit()

    measurement.distance = 10
    selected.on_measured(measurement)
    # second segment requires a stroke rate of at least 30
    measurement.stroke_rate = 28
    selected.on_measured(measurement)
    assert not selected.in_limit()

    measurement.stroke_rate = 30
    selected.on_measured(measurement)
    assert selected.in_limit()

def test_in_limit_checks_every_threshold():
    progress = Progress(Segment().set_duration(60).set_speed(300).set_pulse(120), Measurement())
    assert not progress.in_limit(Measurement(speed=299, pulse=130))
    assert not progress.in_limit(Measurement(speed=310, pulse=110))
    assert progress.in_limit(Measurement(speed=300, pulse=120, stroke_rate=0))

def test_selection_resets_session(selected):
    measurement = Measurement(distance=12, strokes=4)
    selected.on_measured(measurement)
    assert selected.state is GymState.ACTIVE

    program = selected.program
    selected.select(program)
    assert selected.measurement.is_zero()
    assert selected.measurement is not measurement
    assert selected.current is None
    assert selected.progress is None
    assert selected.state is GymState.SELECTED

    selected.select(program)
    assert selected.measurement.is_zero()
    assert selected.state is GymState.SELECTED

def test_deselect_returns_to_idle(selected):
    selected.on_measured(Measurement(distance=1))
    selected.deselect()
    assert selected.state is GymState.IDLE
    assert selected.program is None

def test_workout_gets_location(store):
    location = Location(51.5, -0.12, 8.0, "static")
    locator = Mock(return_value=location)
    gym = Gym(store, locator)
    gym.select(Program.meters("Loc", 100, Difficulty.EASY))
    gym.on_measured(Measurement(distance=1))
    assert store.get_workouts()[0].location == location
    locator.assert_called_once()

def test_repeat_workout_follows_its_program(gym, store):
    program = store.merge_program(interval_program())
    pace = store.merge_workout(Workout(program_id=program.id, program_name=program.name, distance=1200))
    gym.repeat_workout(pace)
    assert gym.program.id == program.id
    assert gym.pace is pace

def test_repeat_of_deleted_program_falls_back_to_challenge(gym, store):
    program = store.merge_program(interval_program())
    pace = store.merge_workout(Workout(program_id=program.id, program_name=program.name, distance=1200))
    store.delete_program(program)

    gym.repeat_workout(pace)
    assert gym.program.name == CHALLENGE_NAME
    assert gym.program.segments_count == 1
    assert gym.program.get_segment(0).distance == 1200
    assert gym.program.get_segment(0).difficulty is Difficulty.NONE
    assert gym.pace is pace
    assert gym.state is GymState.SELECTED

def test_repeat_of_workout_without_program_is_a_challenge(gym):
    gym.repeat_workout(Workout(distance=800))
    assert gym.program.name == CHALLENGE_NAME

def test_listeners_are_notified(gym):
    calls = []
    gym.add_listener(lambda: calls.append("a"))
    gym.select(Program("A"))
    gym.on_measured(Measurement())
    assert calls == ["a", "a"]

def test_failing_listener_does_not_stop_fan_out(gym):
    calls = []

    def broken():
        raise RuntimeError("listener bug")

    gym.add_listener(broken)
    gym.add_listener(lambda: calls.append("b"))
    gym.deselect()
    assert calls == ["b"]

def test_has_and_remove_listener(gym):
    class Display:
        def __call__(self):
            pass

    display = Display()
    gym.add_listener(display)
    assert gym.has_listener(Display)
    gym.remove_listener(display)
    assert not gym.has_listener(Display)

def test_defaults_are_seeded_once(gym, store):
    gym.defaults()
    programs = gym.get_programs()
    assert len(programs) == 8
    intervals = [p for p in programs if p.name == "Segments"][0]
    assert intervals.segments_count == 9
    assert intervals.get_segment(1).stroke_rate == 30

    gym.defaults()
    assert len(gym.get_programs()) == 8

def test_delete_workout_removes_snapshots(selected, store):
    measurement = Measurement(distance=1)
    selected.on_measured(measurement)
    measurement.distance = 2
    selected.on_measured(measurement)
    workout = selected.current
    assert len(store.get_snapshots(workout)) == 2

    selected.delete(workout)
    assert store.get_snapshots(workout) == []
    assert store.get_workouts() == []

def test_deleting_running_workout_discards_session(selected, store):
    measurement = Measurement(distance=1)
    selected.on_measured(measurement)
    selected.delete(selected.current)
    assert selected.state is GymState.IDLE
    assert selected.current is None
    assert selected.progress is None

    measurement.distance = 2
    assert selected.on_measured(measurement) is GymEvent.ACKNOWLEDGED
    assert store.get_workouts() == []

def test_deleting_finished_workout_discards_session(gym, store):
    gym.select(gym.merge_program(Program.meters("Short", 5, Difficulty.EASY)))
    gym.on_measured(Measurement(distance=6))
    finished = gym.finished

    gym.delete(finished)
    assert gym.state is GymState.IDLE
    assert gym.finished is None
    assert store.get_workouts() == []

def test_deleting_other_workout_keeps_session(selected, store):
    old = store.merge_workout(Workout(distance=100))
    selected.on_measured(Measurement(distance=1))
    selected.delete(old)
    assert selected.state is GymState.ACTIVE
    assert [w.id for w in store.get_workouts()] == [selected.current.id]

def test_get_workouts_range_returns_evaluated_only(gym):
    gym.merge_workout(Workout(start=1000, distance=1))
    gym.merge_workout(Workout(start=2000, distance=2))
    gym.merge_workout(Workout(start=3000, distance=3))
    gym.merge_workout(Workout(start=1500, distance=4, evaluate=False))

    assert [w.distance for w in gym.get_workouts(1000, 3000)] == [2, 1]
    assert len(gym.get_workouts()) == 4

def test_add_imports_unevaluated_workout(gym, store):
    program = store.merge_program(Program.meters("2000 m", 2000, Difficulty.MEDIUM))
    snapshots = [Snapshot(workout_id=None, distance=d) for d in (10, 20, 30)]
    workout = gym.add("2000 m", Workout(distance=30), snapshots)

    assert workout.evaluate is False
    assert workout.program_id == program.id
    assert [s.distance for s in gym.get_snapshots(workout)] == [10, 20, 30]
    assert gym.get_workouts(0, 2**62) == []
