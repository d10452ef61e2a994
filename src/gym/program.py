import logging
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from src.gym.measurement import Measurement

logger = logging.getLogger(__name__)

# Pace assumptions used to estimate how long a segment takes when its target is not a duration
ESTIMATE_METRES_PER_SECOND = 4      # roughly a 2:05 /500m pace
ESTIMATE_STROKES_PER_MINUTE = 24
ESTIMATE_KCAL_PER_MINUTE = 10

TARGET_METRICS = ('distance', 'strokes', 'energy', 'duration')
LIMIT_METRICS = ('speed', 'pulse', 'stroke_rate')


class Difficulty(Enum):
    NONE = 0
    EASY = 1
    MEDIUM = 2
    HARD = 3


@dataclass
class Segment:
    '''
    One unit of a training program: exactly one target metric (distance in metres, strokes,
    energy in kcal or duration in seconds) plus optional minimum limits for speed (cm/s),
    pulse (bpm) and stroke rate (spm). A limit of 0 means no limit.

    The setters clear the other targets so that at most one target is ever set.
    '''
    difficulty: Difficulty = Difficulty.EASY
    distance: int = 0
    strokes: int = 0
    energy: int = 0
    duration: int = 0
    speed: int = 0
    pulse: int = 0
    stroke_rate: int = 0
    id: Optional[int] = field(default=None, compare=False)

    def _set_target(self, metric: str, value: int) -> 'Segment':
        if value < 0:
            raise ValueError(f"Segment {metric} target must not be negative: {value}")
        for name in TARGET_METRICS:
            setattr(self, name, 0)
        setattr(self, metric, value)
        return self

    def _set_limit(self, metric: str, value: int) -> 'Segment':
        if value < 0:
            raise ValueError(f"Segment {metric} limit must not be negative: {value}")
        setattr(self, metric, value)
        return self

    def set_distance(self, metres: int) -> 'Segment':
        return self._set_target('distance', metres)

    def set_strokes(self, strokes: int) -> 'Segment':
        return self._set_target('strokes', strokes)

    def set_energy(self, kcal: int) -> 'Segment':
        return self._set_target('energy', kcal)

    def set_duration(self, seconds: int) -> 'Segment':
        return self._set_target('duration', seconds)

    def set_speed(self, cmps: int) -> 'Segment':
        return self._set_limit('speed', cmps)

    def set_pulse(self, bpm: int) -> 'Segment':
        return self._set_limit('pulse', bpm)

    def set_stroke_rate(self, spm: int) -> 'Segment':
        return self._set_limit('stroke_rate', spm)

    def target_metric(self) -> Optional[str]:
        '''Name of the target metric that is set, or None for a segment without a target.'''
        for name in TARGET_METRICS:
            if getattr(self, name) > 0:
                return name
        return None

    def get_target(self) -> int:
        metric = self.target_metric()
        return getattr(self, metric) if metric else 0

    def as_duration(self) -> int:
        '''Estimated length of the segment in seconds.'''
        if self.duration > 0:
            return self.duration
        if self.distance > 0:
            return round(self.distance / ESTIMATE_METRES_PER_SECOND)
        if self.strokes > 0:
            return round(self.strokes * 60 / ESTIMATE_STROKES_PER_MINUTE)
        if self.energy > 0:
            return round(self.energy * 60 / ESTIMATE_KCAL_PER_MINUTE)
        return 0


class Program:
    def __init__(self, name: str, segments: Optional[list[Segment]] = None, id: Optional[int] = None):
        self.id = id
        self.name = name
        self.segments: list[Segment] = list(segments) if segments else [Segment(Difficulty.EASY)]

    def __repr__(self):
        return f"<Program id={self.id} name={self.name!r} segments={len(self.segments)}>"

    @classmethod
    def meters(cls, name: str, distance: int, difficulty: Difficulty) -> 'Program':
        return cls(name, [Segment(difficulty).set_distance(distance)])

    @classmethod
    def strokes(cls, name: str, strokes: int, difficulty: Difficulty) -> 'Program':
        return cls(name, [Segment(difficulty).set_strokes(strokes)])

    @classmethod
    def calories(cls, name: str, kcal: int, difficulty: Difficulty) -> 'Program':
        return cls(name, [Segment(difficulty).set_energy(kcal)])

    @classmethod
    def minutes(cls, name: str, minutes: int, difficulty: Difficulty) -> 'Program':
        return cls(name, [Segment(difficulty).set_duration(minutes * 60)])

    @property
    def segments_count(self) -> int:
        return len(self.segments)

    def get_segment(self, index: int) -> Segment:
        return self.segments[index]

    def index_of(self, segment: Segment) -> int:
        # Identity, not equality: two segments with the same settings are still distinct units
        for index, candidate in enumerate(self.segments):
            if candidate is segment:
                return index
        raise ValueError(f"Segment {segment} is not part of program {self.name!r}")

    def get_next_segment(self, segment: Segment) -> Optional[Segment]:
        index = self.index_of(segment)
        if index == len(self.segments) - 1:
            return None
        return self.segments[index + 1]

    def add_segment(self, segment: Segment) -> None:
        self.segments.append(segment)

    def remove_segment(self, segment: Segment) -> None:
        del self.segments[self.index_of(segment)]
        if not self.segments:
            self.segments.append(Segment(Difficulty.EASY))

    def create_segment_before(self, segment: Segment) -> Segment:
        created = Segment(Difficulty.EASY)
        self.segments.insert(self.index_of(segment), created)
        return created

    def create_segment_after(self, segment: Segment) -> Segment:
        created = Segment(Difficulty.EASY)
        self.segments.insert(self.index_of(segment) + 1, created)
        return created

    def as_duration(self) -> int:
        return sum(segment.as_duration() for segment in self.segments)

    def new_workout(self) -> 'Workout':
        return Workout(program_id=self.id, program_name=self.name)


@dataclass
class Location:
    latitude: float
    longitude: float
    accuracy: float     # metres, smaller is better
    provider: str = ""


@dataclass
class Workout:
    '''
    Record of one rowing session. evaluate is False for imported sessions so that they
    are left out of statistics.
    '''
    program_id: Optional[int] = None
    program_name: Optional[str] = None
    start: int = field(default_factory=lambda: int(round(time.time() * 1000)))  # ms since epoch
    location: Optional[Location] = None
    evaluate: bool = True
    distance: int = 0
    duration: int = 0
    strokes: int = 0
    energy: int = 0
    id: Optional[int] = None

    def on_measured(self, measurement: Measurement) -> bool:
        '''
        Take over the cumulative values of the measurement.
        Returns:
            True if any of the values changed and the workout should be stored again
            False if nothing changed
        '''
        changed = False
        for name in ('distance', 'duration', 'strokes', 'energy'):
            value = getattr(measurement, name)
            if getattr(self, name) != value:
                setattr(self, name, value)
                changed = True
        return changed


@dataclass(frozen=True)
class Snapshot:
    workout_id: Optional[int]
    distance: int = 0
    strokes: int = 0
    duration: int = 0
    energy: int = 0
    pulse: int = 0
    speed: int = 0
    stroke_rate: int = 0
    id: Optional[int] = None

    @classmethod
    def of(cls, measurement: Measurement, workout_id: Optional[int] = None) -> 'Snapshot':
        return cls(workout_id=workout_id, **measurement.as_dict())
