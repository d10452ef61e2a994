import logging
import time

from typing import Callable, Optional

from src.gym.measurement import Measurement
from src.rower.link import (
    ByteSource,
    LinkConfigError,
    TransportError,
    PROTOCOL3_LINK,
)
from src.rower.trace import Trace, NullTrace

logger = logging.getLogger(__name__)

'''
The OPCODE_MAP details the frames sent by a WaterRower monitor speaking the legacy "protocol 3"
(1200 baud, 8N1, monitor transmits only). Every frame starts with a single opcode byte, followed
by a fixed number of payload bytes. Bytes that are not listed here are treated as single byte
frames without a payload: they are traced but otherwise ignored, which keeps the decoder
aligned with the stream when the monitor emits noise.

The payload arithmetic has been reconstructed from captured traces (see tests/data/waterrower.trace):
- distance: one byte holding the distance rowed since the last distance frame in decimetres
- stroke_rate_speed: stroke rate in strokes per minute, then speed in decimetres per second
- pulse: heart rate in beats per minute
- meta: two bytes of unknown meaning, consumed to keep the stream aligned
'''

OPCODE_MAP = {
    0xFB: {'type': 'pulse', 'size': 1},                # heart rate (bpm), overwrites the last value
    0xFC: {'type': 'stroke', 'size': 0},               # one completed stroke
    0xFD: {'type': 'meta', 'size': 2},                 # duration/meta data, no effect on the measurement
    0xFE: {'type': 'distance', 'size': 1},             # distance increment in decimetres
    0xFF: {'type': 'stroke_rate_speed', 'size': 2},    # stroke rate (spm) and speed (dm/s)
}

PROTOCOL_NAME = "protocol 3"

DECIMETRES_PER_METRE = 10
SPEED_SCALE = 10        # speed is reported in dm/s, the measurement holds cm/s


class Protocol3:
    '''
    Stateful decoder turning the rower's byte stream into Measurement updates.

    decode() handles exactly one frame. transfer() decodes frames for as long as the
    source has bytes pending, which is what a polling loop calls once per tick.

    State that must survive between frames (the sub-metre distance remainder and the
    start of the duration clock) belongs to the Measurement currently being updated: when
    a different Measurement instance is passed in, that state starts afresh.
    '''

    def __init__(self, source: ByteSource, trace: Optional[Trace] = None, clock: Callable[[], float] = time.monotonic):
        if source.link != PROTOCOL3_LINK:
            raise LinkConfigError(
                f"Byte source link {source.link.describe()} does not match {PROTOCOL_NAME} link {PROTOCOL3_LINK.describe()}"
            )
        self._source = source
        self._trace = trace if trace is not None else NullTrace()
        self._clock = clock
        self._header_traced = False
        self._measurement: Optional[Measurement] = None
        self._distance_remainder = 0    # decimetres not yet counted in measurement.distance
        self._rowing_since: Optional[float] = None
        self._partial: Optional[bytearray] = None    # frame cut short by the source, completed by the next decode

        self._handlers: dict[str, Callable[[Measurement, bytes], None]] = {
            'pulse': self._handle_pulse,
            'stroke': self._handle_stroke,
            'meta': self._handle_meta,
            'distance': self._handle_distance,
            'stroke_rate_speed': self._handle_stroke_rate_speed,
        }

    def reset(self) -> None:
        logger.debug("Protocol3.reset: clearing distance remainder and duration clock")
        self._measurement = None
        self._distance_remainder = 0
        self._rowing_since = None

    def resync(self) -> None:
        '''Drop a partially read frame, for when the link has been reopened and the stream restarts.'''
        if self._partial is not None:
            logger.warning(f"Discarding incomplete frame {bytes(self._partial).hex(' ')}")
            self._partial = None

    @property
    def has_partial_frame(self) -> bool:
        return self._partial is not None

    def _adopt(self, measurement: Measurement) -> None:
        if measurement is not self._measurement:
            if self._measurement is not None:
                logger.debug("Protocol3: new measurement received, starting a fresh session")
            self.reset()
            self._measurement = measurement

    def transfer(self, measurement: Measurement) -> int:
        '''
        Decode all frames that can be read without waiting for the monitor.
        Returns:
            The number of frames decoded.
        Raises:
            TransportError: If the link fails, or a frame is cut short.
        '''
        frames = 0
        while self._source.pending() > 0:
            self.decode(measurement)
            frames += 1
        return frames

    def decode(self, measurement: Measurement) -> Optional[str]:
        '''
        Read one frame from the byte source and apply it to the measurement.
        Returns:
            The type of the decoded frame as listed in OPCODE_MAP
            None: If the opcode is unknown
        Raises:
            TransportError: If the source fails before a complete frame was read. The
                measurement is left untouched and the bytes read so far are kept, so the
                next call completes the frame from the bytes that follow.
        '''
        if not self._header_traced:
            self._trace.comment(PROTOCOL_NAME)
            self._header_traced = True

        self._adopt(measurement)

        if self._partial is not None:
            frame = self._partial
        else:
            frame = bytearray([self._source.read()])
        opcode = frame[0]
        entry = OPCODE_MAP.get(opcode)

        if entry is not None:
            try:
                while len(frame) < 1 + entry['size']:
                    frame.append(self._source.read())
            except TransportError as e:
                self._partial = frame
                logger.warning(f"Incomplete {entry['type']} frame {bytes(frame).hex(' ')}: {e}")
                raise
        self._partial = None

        self._trace.on_input(bytes(frame))

        if entry is None:
            logger.warning(f"Ignoring unknown opcode from rower: 0x{opcode:02X}")
            return None

        frame_type = entry['type']
        self._handlers[frame_type](measurement, bytes(frame[1:]))
        self._update_duration(measurement)
        logger.debug(f"Decoded {frame_type} frame {bytes(frame).hex(' ')}: {measurement}")
        return frame_type

    def _start_clock(self) -> None:
        if self._rowing_since is None:
            self._rowing_since = self._clock()

    def _update_duration(self, measurement: Measurement) -> None:
        if self._rowing_since is None:
            return
        elapsed = int(self._clock() - self._rowing_since)
        measurement.duration = max(measurement.duration, elapsed)

    def _handle_pulse(self, measurement: Measurement, payload: bytes) -> None:
        measurement.pulse = payload[0]

    def _handle_stroke(self, measurement: Measurement, payload: bytes) -> None:
        self._start_clock()
        measurement.strokes += 1

    def _handle_meta(self, measurement: Measurement, payload: bytes) -> None:
        pass

    def _handle_distance(self, measurement: Measurement, payload: bytes) -> None:
        self._start_clock()
        decimetres = self._distance_remainder + payload[0]
        measurement.distance += decimetres // DECIMETRES_PER_METRE
        self._distance_remainder = decimetres % DECIMETRES_PER_METRE

    def _handle_stroke_rate_speed(self, measurement: Measurement, payload: bytes) -> None:
        measurement.stroke_rate = payload[0]
        measurement.speed = payload[1] * SPEED_SCALE
