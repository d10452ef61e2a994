import logging

from pathlib import Path
from typing import Iterator, Union

logger = logging.getLogger(__name__)

TRACE_LOGGER = 'rowtrace'   # Logger name routed to the replayable trace file in config/logging.conf

INPUT_PREFIX = '<'
OUTPUT_PREFIX = '>'
COMMENT_PREFIX = '#'


def format_bytes(data: bytes) -> str:
    return ' '.join(f"{b:02X}" for b in data)


class Trace:
    '''
    Observer of the bytes exchanged with the rower. Directives are rendered as
    '#comment', '<XX YY' for inbound frames and '>XX YY' for outbound ones.
    '''

    def comment(self, text: str) -> None:
        self.directive(COMMENT_PREFIX + text)

    def on_input(self, data: bytes) -> None:
        self.directive(INPUT_PREFIX + format_bytes(data))

    def on_output(self, data: bytes) -> None:
        self.directive(OUTPUT_PREFIX + format_bytes(data))

    def directive(self, line: str) -> None:
        raise NotImplementedError


class NullTrace(Trace):
    def directive(self, line: str) -> None:
        pass


class MemoryTrace(Trace):
    def __init__(self):
        self._directives: list[str] = []

    def directive(self, line: str) -> None:
        self._directives.append(line)

    @property
    def directives(self) -> list[str]:
        return list(self._directives)

    def __str__(self):
        return ''.join(self._directives)


class LogTrace(Trace):
    '''Writes one directive per log record, so the log file can be replayed with read_trace().'''

    def __init__(self, name: str = TRACE_LOGGER):
        self._logger = logging.getLogger(name)

    def directive(self, line: str) -> None:
        self._logger.info(line)


def parse_input_line(line: str) -> bytes:
    '''Convert a '<FE 19' directive into its bytes. Raises ValueError for a malformed directive.'''
    if not line.startswith(INPUT_PREFIX):
        raise ValueError(f"Not an inbound trace directive: {line!r}")
    hexes = line[len(INPUT_PREFIX):].split()
    return bytes(int(h, 16) for h in hexes)


def read_trace(path: Union[str, Path]) -> Iterator[bytes]:
    '''
    Yield the inbound frames of a trace file in order. Comments, outbound directives and
    blank lines are skipped.
    '''
    with open(path, encoding="utf-8") as f:
        for number, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line.startswith(INPUT_PREFIX):
                continue
            try:
                yield parse_input_line(line)
            except ValueError as e:
                logger.warning(f"Skipping malformed trace line {number} in {path}: {e}")
