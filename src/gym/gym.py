import threading
import logging

from enum import Enum, auto
from typing import Callable, Optional

from src.gym.measurement import Measurement
from src.gym.program import (
    Difficulty,
    Location,
    Program,
    Segment,
    Snapshot,
    Workout,
)
from src.db.db_store import GymStore, ProgramDeletedError

logger = logging.getLogger(__name__)

CHALLENGE_NAME = "Challenge"

Listener = Callable[[], None]
Locator = Callable[[], Optional[Location]]


class GymEvent(Enum):
    ACKNOWLEDGED = auto()       # measurement observed, nothing of interest happened
    PROGRAM_START = auto()
    SEGMENT_CHANGED = auto()
    PROGRAM_FINISHED = auto()


class GymState(Enum):
    IDLE = auto()       # no program selected
    SELECTED = auto()   # program selected, waiting for the first stroke
    ACTIVE = auto()     # workout running, progress tracks the current segment
    FINISHED = auto()   # all segments completed, waiting for the next selection


class Progress:
    '''
    Achievement within one segment. The measurement at the start of the segment is copied,
    so that the decoder updating the live measurement in place cannot move the reference.
    '''

    def __init__(self, segment: Segment, start: Measurement):
        self.segment = segment
        self.start = start.copy()

    def __repr__(self):
        return f"<Progress segment={self.segment} start={self.start}>"

    def _value(self, measurement: Measurement) -> int:
        metric = self.segment.target_metric()
        if metric is None:
            return 0
        return getattr(measurement, metric)

    def achieved(self, measurement: Measurement) -> int:
        return self._value(measurement) - self._value(self.start)

    def completion(self, measurement: Measurement) -> float:
        target = self.segment.get_target()
        if target <= 0:
            # A segment without a target never completes
            return 0.0
        return max(0.0, min(self.achieved(measurement) / target, 1.0))

    def in_limit(self, measurement: Measurement) -> bool:
        '''True if the instantaneous values meet every minimum set on the segment.'''
        if measurement.speed < self.segment.speed:
            return False
        if measurement.pulse < self.segment.pulse:
            return False
        if measurement.stroke_rate < self.segment.stroke_rate:
            return False
        return True


class Gym:
    '''
    The live rowing session: the selected program, the current workout and the progress
    through the program's segments.

    All state changes happen under an RLock that the polling loop also holds while it
    decodes, so decoding and evaluation of a measurement are never interleaved with a
    selection.

    Listeners are notified synchronously after every change. A listener must not add or
    remove listeners from within its own notification.
    '''

    def __init__(self, store: GymStore, locator: Optional[Locator] = None):
        self._store = store
        self._locator = locator
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

        self.program: Optional[Program] = None
        self.pace: Optional[Workout] = None             # past workout being repeated or challenged
        self.current: Optional[Workout] = None
        self.finished: Optional[Workout] = None         # workout of a program that has been completed
        self.measurement: Measurement = Measurement()
        self.progress: Optional[Progress] = None

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def state(self) -> GymState:
        with self._lock:
            if self.program is None:
                return GymState.IDLE
            if self.finished is not None:
                return GymState.FINISHED
            if self.current is not None:
                return GymState.ACTIVE
            return GymState.SELECTED

    def defaults(self) -> None:
        '''Store a set of starter programs, unless there are programs already.'''
        if self._store.count_programs() > 0:
            return
        logger.info("No programs stored, creating default programs")

        self._store.merge_program(Program.meters("500 m", 500, Difficulty.EASY))
        self._store.merge_program(Program.meters("1000 m", 1000, Difficulty.EASY))
        self._store.merge_program(Program.meters("2000 m", 2000, Difficulty.MEDIUM))
        self._store.merge_program(Program.calories("200 kcal", 200, Difficulty.MEDIUM))
        self._store.merge_program(Program.minutes("5 min", 5, Difficulty.EASY))
        self._store.merge_program(Program.minutes("10 min", 10, Difficulty.MEDIUM))
        self._store.merge_program(Program.strokes("500 strokes", 500, Difficulty.MEDIUM))

        program = Program("Segments")
        program.get_segment(0).set_distance(1000)
        for _ in range(4):
            program.add_segment(Segment(Difficulty.HARD).set_duration(60).set_stroke_rate(30))
            program.add_segment(Segment(Difficulty.EASY).set_distance(1000))
        self._store.merge_program(program)

    # Listeners

    def add_listener(self, listener: Listener) -> None:
        logger.debug(f"Registering gym listener - {listener}")
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        logger.debug(f"De-registering gym listener - {listener}")
        self._listeners.remove(listener)

    def has_listener(self, cls: type) -> bool:
        return any(isinstance(listener, cls) for listener in self._listeners)

    def _fire_changed(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception:
                logger.exception(f"Gym listener {listener} failed")

    # Store access

    def get_programs(self) -> list[Program]:
        return self._store.get_programs()

    def get_program(self, program_id: int) -> Program:
        return self._store.lookup_program(program_id)

    def merge_program(self, program: Program) -> Program:
        return self._store.merge_program(program)

    def get_workouts(self, from_ms: Optional[int] = None, to_ms: Optional[int] = None) -> list[Workout]:
        '''All workouts, or only evaluated workouts started within [from_ms, to_ms).'''
        if from_ms is None and to_ms is None:
            return self._store.get_workouts()
        return self._store.get_workouts_between(from_ms or 0, to_ms if to_ms is not None else 2**63 - 1)

    def get_workout(self, workout_id: int) -> Workout:
        return self._store.lookup_workout(workout_id)

    def get_snapshots(self, workout: Workout) -> list[Snapshot]:
        return self._store.get_snapshots(workout)

    def merge_workout(self, workout: Workout) -> Workout:
        return self._store.merge_workout(workout)

    def delete(self, workout: Workout) -> None:
        '''
        Delete a workout and its snapshots. Deleting the running or the finished workout
        discards the session, as if the program had been deselected.
        '''
        with self._lock:
            self._store.delete_workout(workout)
            if self.pace is not None and self.pace.id == workout.id:
                self.pace = None
            if any(w is not None and w.id == workout.id for w in (self.current, self.finished)):
                logger.info(f"Deleted workout {workout.id} of the session, discarding the session")
                self._select(None, None)

    def add(self, program_name: str, workout: Workout, snapshots: list[Snapshot]) -> Workout:
        '''Import a recorded workout. Imported workouts are not evaluated.'''
        return self._store.add_workout(program_name, workout, snapshots)

    # Selection

    def _select(self, program: Optional[Program], pace: Optional[Workout]) -> None:
        with self._lock:
            self.pace = pace
            self.program = program

            self.measurement = Measurement()
            self.current = None
            self.finished = None
            self.progress = None
            logger.info(f"Selected program {program.name if program else None}")

            self._fire_changed()

    def deselect(self) -> None:
        self._select(None, None)

    def select(self, program: Program) -> None:
        self._select(program, None)

    repeat = select

    def repeat_workout(self, pace: Workout) -> None:
        '''Row the program of a past workout again, against that workout's pace.'''
        if pace.program_id is None:
            logger.info(f"Workout {pace.id} has no program, challenging its distance instead")
            self.challenge(pace)
            return

        try:
            program = self._store.lookup_program(pace.program_id)
        except ProgramDeletedError:
            logger.warning(f"Program {pace.program_id} of workout {pace.id} has been deleted, challenging its distance instead")
            self.challenge(pace)
            return

        self._select(program, pace)

    def challenge(self, pace: Workout) -> None:
        self._select(Program.meters(CHALLENGE_NAME, pace.distance, Difficulty.NONE), pace)

    # Measurements

    def completion(self) -> float:
        with self._lock:
            return self.progress.completion(self.measurement) if self.progress else 0.0

    def in_limit(self) -> bool:
        with self._lock:
            return self.progress.in_limit(self.measurement) if self.progress else True

    def _locate(self) -> Optional[Location]:
        if self._locator is None:
            return None
        return self._locator()

    def on_measured(self, measurement: Measurement) -> GymEvent:
        '''
        Evaluate a freshly decoded measurement against the selected program.
        Returns:
            The GymEvent describing what changed.
        '''
        with self._lock:
            event = GymEvent.ACKNOWLEDGED
            self.measurement = measurement

            if self.program is not None and self.finished is None and measurement.has_progress():
                # Workout creation is delayed until the rower actually moves

                if self.current is None:
                    self.current = self.program.new_workout()
                    self.current.location = self._locate()
                    self.progress = Progress(self.program.get_segment(0), Measurement())
                    logger.info(f"Program {self.program.name} started")
                    event = GymEvent.PROGRAM_START

                if self.current.on_measured(measurement):
                    self._store.merge_workout(self.current)
                    self._store.insert_snapshot(Snapshot.of(measurement, self.current.id))

                if self.progress is not None and self.progress.completion(measurement) >= 1.0:
                    following = self.program.get_next_segment(self.progress.segment)
                    if following is None:
                        self._store.merge_workout(self.current)
                        self.finished = self.current
                        self.current = None
                        self.progress = None
                        logger.info(f"Program {self.program.name} finished: {self.finished}")
                        event = GymEvent.PROGRAM_FINISHED
                    else:
                        self.progress = Progress(following, measurement)
                        logger.info(f"Segment changed to {following}")
                        event = GymEvent.SEGMENT_CHANGED

            self._fire_changed()

        return event
