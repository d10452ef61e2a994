import logging

from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)

CUMULATIVE_FIELDS = ('distance', 'strokes', 'duration', 'energy')
INSTANT_FIELDS = ('pulse', 'speed', 'stroke_rate')


@dataclass
class Measurement:
    '''
    Running totals of a rowing session, updated in place by the protocol decoder.

    Cumulative fields (distance in metres, strokes, duration in seconds, energy in kcal)
    never decrease during the lifetime of one Measurement. Instantaneous fields (pulse in bpm,
    speed in cm/s, stroke_rate in strokes per minute) hold the last decoded value.
    A Measurement with every field at zero means no data has been received yet.
    '''
    distance: int = 0
    strokes: int = 0
    duration: int = 0
    energy: int = 0
    pulse: int = 0
    speed: int = 0
    stroke_rate: int = 0

    def copy(self) -> 'Measurement':
        return Measurement(**self.as_dict())

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def is_zero(self) -> bool:
        return not any(self.as_dict().values())

    def has_progress(self) -> bool:
        return self.distance > 0 or self.duration > 0
