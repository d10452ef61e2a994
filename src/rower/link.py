import threading
import logging
import time

import serial
import serial.tools.list_ports

from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

PORT_SCAN_RETRY_DELAY = 5       # Seconds between scans for a serial port when no rower is plugged in
SERIAL_READ_TIMEOUT = 0.5       # Maximum time a single byte read may block. At 1200 baud a byte takes ~8ms
                                # to arrive, so this only expires when the monitor has gone quiet.
PORT_NAME_HINTS = ("WR-S4", "WaterRower", "FT232R", "USB Serial")  # Substrings of the port description that identify a rower


# CUSTOM EXCEPTIONS
class LinkConfigError(ValueError):
    pass

class TransportError(OSError):
    pass

class SourceExhaustedError(TransportError):
    pass


@dataclass(frozen=True)
class LinkConfig:
    baudrate: int
    data_bits: int
    parity: str
    stop_bits: float
    tx: bool        # False for a half-duplex link on which the host only listens

    def describe(self) -> str:
        return f"{self.baudrate} {self.data_bits}{self.parity}{self.stop_bits:g} {'tx' if self.tx else 'rx only'}"


PROTOCOL3_LINK = LinkConfig(
    baudrate=1200,
    data_bits=serial.EIGHTBITS,
    parity=serial.PARITY_NONE,
    stop_bits=serial.STOPBITS_ONE,
    tx=False,
)


class ByteSource:
    '''
    Source of raw bytes from the rower. Subclasses implement read() and pending().

    read() blocks until a byte is available and returns it as an int. It raises
    SourceExhaustedError when no byte arrives (timeout or end of input) and TransportError
    when the underlying link fails or is closed.
    '''

    def __init__(self, link: LinkConfig = PROTOCOL3_LINK):
        self.link = link

    @property
    def baudrate(self) -> int:
        return self.link.baudrate

    @property
    def data_bits(self) -> int:
        return self.link.data_bits

    @property
    def parity(self) -> str:
        return self.link.parity

    @property
    def stop_bits(self) -> float:
        return self.link.stop_bits

    @property
    def tx(self) -> bool:
        return self.link.tx

    @property
    def is_open(self) -> bool:
        return True

    def open(self) -> None:
        pass

    def read(self) -> int:
        raise NotImplementedError

    def pending(self) -> int:
        '''Number of bytes that can be read without blocking.'''
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        if not self.tx:
            raise TransportError(f"Link {self.link.describe()} does not support transmitting")
        raise NotImplementedError

    def close(self) -> None:
        pass


class BufferByteSource(ByteSource):
    '''In-memory byte source, fed with setup_input(). Used for trace replay and tests.'''

    def __init__(self, data: Iterable[int] = (), link: LinkConfig = PROTOCOL3_LINK):
        super().__init__(link)
        self._buffer: deque[int] = deque(data)
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def setup_input(self, data: Iterable[int]) -> None:
        self._buffer.extend(data)

    def read(self) -> int:
        if self._closed:
            raise TransportError("Byte source is closed")
        if not self._buffer:
            raise SourceExhaustedError("No more bytes available")
        return self._buffer.popleft()

    def pending(self) -> int:
        return 0 if self._closed else len(self._buffer)

    def close(self) -> None:
        self._closed = True


class SerialByteSource(ByteSource):
    '''Byte source reading from the rower's USB serial port using pyserial.'''

    def __init__(self, port: Optional[str] = None, link: LinkConfig = PROTOCOL3_LINK, timeout: float = SERIAL_READ_TIMEOUT):
        super().__init__(link)
        self._serial_lock = threading.RLock()
        self._serial = serial.Serial()
        self._serial.port = port
        self._serial.baudrate = link.baudrate
        self._serial.bytesize = link.data_bits
        self._serial.parity = link.parity
        self._serial.stopbits = link.stop_bits
        self._serial.timeout = timeout

    @property
    def is_open(self) -> bool:
        with self._serial_lock:
            return self._serial.is_open

    def open(self) -> None:
        '''
        Open the serial port, scanning for one first if no port was given.
        Control does not return until a port has been found.
        '''
        with self._serial_lock:
            if self._serial.is_open:
                logger.debug("Closing existing serial connection.")
                self._serial.close()
            if not self._serial.port:
                self._serial.port = find_port()
            try:
                self._serial.open()
            except serial.SerialException as e:
                # Force a rescan next time, the device may have been re-enumerated under another name
                self._serial.port = None
                raise TransportError(f"Could not open serial port: {e}") from e
        logger.info(f"Serial port open: {self._serial.port} ({self.link.describe()})")

    def close(self) -> None:
        with self._serial_lock:
            if self._serial.is_open:
                logger.debug("Closing serial communications with rower.")
                self._serial.close()

    def read(self) -> int:
        try:
            with self._serial_lock:
                data = self._serial.read(1)
        except serial.SerialException as e:
            logger.error(f"Serial read communication error: {e}")
            raise TransportError(str(e)) from e
        if not data:
            raise SourceExhaustedError(f"No byte received within {self._serial.timeout}s")
        return data[0]

    def pending(self) -> int:
        try:
            with self._serial_lock:
                return self._serial.in_waiting
        except (serial.SerialException, OSError) as e:
            raise TransportError(str(e)) from e


# HELPER FUNCTIONS
def find_port(hints: tuple[str, ...] = PORT_NAME_HINTS) -> str:
    logger.info("Searching for serial port...")
    attempts = 0
    while True:
        # If a port isn't found, the code will remain in this loop.
        attempts += 1
        for port in serial.tools.list_ports.comports():
            description = f"{port.description} {port.product or ''}"
            if any(hint in description for hint in hints):
                logger.info(f"Serial port found: {port.device}")
                return port.device

        if ((attempts - 1) % 360) == 0: # message every ~30 minutes
            logger.warning(f"Serial port not found in {attempts} attempts; retrying every {PORT_SCAN_RETRY_DELAY}s")
        time.sleep(PORT_SCAN_RETRY_DELAY)
