import json
import logging
import threading

from pathlib import Path
from typing import Iterable, Optional, Union

from src.gym.program import Location

logger = logging.getLogger(__name__)


class LocationProvider:
    name = "unknown"

    def last_known(self) -> Optional[Location]:
        raise NotImplementedError


class StaticLocationProvider(LocationProvider):
    '''A fixed location, e.g. the position of the rower configured at installation.'''
    name = "static"

    def __init__(self, latitude: float, longitude: float, accuracy: float):
        self._location = Location(latitude, longitude, accuracy, self.name)

    def last_known(self) -> Optional[Location]:
        return self._location


class FileLocationProvider(LocationProvider):
    '''
    Reads the last fix written by a GPS helper as JSON:
    {"latitude": 51.5, "longitude": -0.1, "accuracy": 12.0}
    '''
    name = "file"

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)

    def last_known(self) -> Optional[Location]:
        if not self._path.exists():
            return None
        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)
        return Location(float(data['latitude']), float(data['longitude']), float(data['accuracy']), self.name)


class Locator:
    '''
    Best effort location lookup: the most accurate last known location across all providers.
    Providers that are not permitted or fail are skipped, so calling a Locator never raises.
    '''

    def __init__(self, providers: Iterable[LocationProvider] = ()):
        self._lock = threading.Lock()
        self._providers = list(providers)

    def add_provider(self, provider: LocationProvider) -> None:
        with self._lock:
            self._providers.append(provider)

    def __call__(self) -> Optional[Location]:
        best: Optional[Location] = None
        with self._lock:
            providers = list(self._providers)

        for provider in providers:
            try:
                location = provider.last_known()
            except PermissionError as e:
                logger.warning(f"Location provider {provider.name} not permitted: {e}")
                continue
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Location provider {provider.name} failed: {e}")
                continue
            if location is None:
                continue
            if best is None or location.accuracy < best.accuracy:
                best = location

        logger.debug(f"Best known location: {best}")
        return best
