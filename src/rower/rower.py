import threading
import logging
import time

from pathlib import Path
from typing import Callable, Optional, Union

from src.gym.gym import Gym, GymEvent
from src.db.db_store import ReferenceMissingError, StoreError
from src.rower.link import (
    BufferByteSource,
    ByteSource,
    SourceExhaustedError,
    TransportError,
)
from src.rower.protocol3 import Protocol3
from src.rower.trace import Trace, read_trace

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1             # Seconds between polls of the byte source
SERIAL_OPEN_RETRY_DELAY = 5     # Seconds to wait before reopening a link that failed

EventCallback = Callable[[GymEvent], None]


def build_daemon(target, name: Optional[str] = None) -> threading.Thread:
    t = threading.Thread(target=target, name=name)
    t.daemon = True
    return t


def is_live_thread(t) -> bool:
    return bool(t and t.is_alive())


class Rower(object):
    '''
    Drives the decoding pipeline: on every tick the frames pending on the byte source are
    decoded into the gym's measurement, then the gym evaluates that measurement. Both steps
    run under the gym lock so that a program selection never lands between them.
    '''

    def __init__(self, source: ByteSource, gym: Gym, trace: Optional[Trace] = None, clock: Callable[[], float] = time.monotonic):
        logger.debug("Entering Rower class Init")
        self._source = source
        self._gym = gym
        self._protocol = Protocol3(source, trace, clock)
        self._callbacks: set[EventCallback] = set()
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        logger.debug("Create and start rower polling thread...")
        self._stop_event.clear()
        self._poll_thread = build_daemon(target=self._start_polling, name="RowerPollThread")
        self._poll_thread.start()

    def stop(self) -> None:
        logger.debug("Stopping rower polling.")
        self._stop_event.set()
        if is_live_thread(self._poll_thread) and self._poll_thread is not threading.current_thread():
            self._poll_thread.join(timeout=2)
        self._source.close()

    @property
    def thread(self) -> Optional[threading.Thread]:
        return self._poll_thread

    def is_connected(self) -> bool:
        return self._source.is_open and is_live_thread(self._poll_thread)

    def poll(self) -> Optional[GymEvent]:
        '''
        Decode whatever the rower has sent since the last poll and evaluate it.
        Returns:
            The GymEvent of the evaluation
            None: If no frame was pending
        Raises:
            TransportError: If the link failed. Frames completed before the failure
                remain applied to the measurement. SourceExhaustedError means a frame
                was cut short, it is completed by a later poll.
            StoreError: If the measurement could not be recorded.
        '''
        with self._gym.lock:
            measurement = self._gym.measurement
            frames = self._protocol.transfer(measurement)
            if not frames:
                return None
            event = self._gym.on_measured(measurement)

        if event is not GymEvent.ACKNOWLEDGED:
            logger.info(f"Gym event: {event.name}")
        self.notify_callbacks(event)
        return event

    def _open(self) -> None:
        while not self._stop_event.is_set():
            try:
                logger.debug("Attempting to open rower link...")
                self._source.open()
                return
            except TransportError as e:
                logger.error(f"Error encountered opening rower link: {e}. Retrying in {SERIAL_OPEN_RETRY_DELAY} seconds")
                self._stop_event.wait(SERIAL_OPEN_RETRY_DELAY)

    def _start_polling(self) -> None:
        while not self._stop_event.is_set():
            if not self._source.is_open:
                self._open()
                continue
            try:
                self.poll()
            except SourceExhaustedError as e:
                # The rest of the frame is completed on a later tick
                logger.debug(f"Rower went quiet mid-frame: {e}")
            except TransportError as e:
                logger.error(f"Rower communication error: {e}. Reopening link.")
                self._source.close()
                self._protocol.resync()
                self._stop_event.wait(SERIAL_OPEN_RETRY_DELAY)
                continue
            except (StoreError, ReferenceMissingError):
                logger.exception("Failed to record the measurement, continuing to poll")
            self._stop_event.wait(POLL_INTERVAL)

    def replay(self, path: Union[str, Path]) -> int:
        '''
        Feed the inbound frames of a trace file through the pipeline, one poll per frame.
        Only possible when the rower reads from a BufferByteSource.
        Returns:
            The number of frames replayed.
        '''
        if not isinstance(self._source, BufferByteSource):
            raise TypeError("Replaying a trace needs a BufferByteSource")
        count = 0
        for frame in read_trace(path):
            self._source.setup_input(frame)
            self.poll()
            count += 1
        logger.info(f"Replayed {count} frames from {path}: {self._gym.measurement}")
        return count

    def register_callback(self, cb: EventCallback) -> None:
        logger.debug(f"Registering rower event callback - {cb}")
        self._callbacks.add(cb)

    def remove_callback(self, cb: EventCallback) -> None:
        logger.debug(f"De-registering rower event callback - {cb}")
        self._callbacks.remove(cb)

    def notify_callbacks(self, event: GymEvent) -> None:
        for cb in self._callbacks:
            cb(event)
