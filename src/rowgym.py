import logging
import logging.config
import pathlib
import os
import sys

PROJECT_ROOT = pathlib.Path(__file__).parent.parent.absolute()

log_dir = PROJECT_ROOT / 'logs'
os.makedirs(log_dir, exist_ok=True)

loggerconfigpath = str(PROJECT_ROOT / 'config' / 'logging.conf')
logging.config.fileConfig(loggerconfigpath, disable_existing_loggers=False, defaults={'logdir': str(log_dir)})
logger = logging.getLogger(__name__)

# Do not put any non-logging related imports above this line,
# especially imports from other parts of this project because
# that will prevent any modules that aren't explicitly
# named in logging.conf from falling back to the default root
# logger.

import argparse
import asyncio
import threading
import signal
import time
from src.db.db_store import GymStore
from src.gym.gym import Gym
from src.location import Locator
from src.rower.link import BufferByteSource, SerialByteSource
from src.rower.rower import Rower
from src.rower.trace import LogTrace
from src.api.api_http import http_task
from src.api.api_ws import ws_task

DB_PATH = PROJECT_ROOT / 'gym.db'

# List to keep track of running threads
threads = []

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rowgym", description="Track WaterRower workouts against training programs.")
    parser.add_argument("--db", default=str(DB_PATH), help="sqlite database file")
    parser.add_argument("--port", default=None, help="serial port of the rower (scanned for if omitted)")
    parser.add_argument("--program", default=None, help="name of the program to select on start")
    parser.add_argument("--replay", default=None, help="replay a trace file instead of reading the rower")
    parser.add_argument("--no-api", action="store_true", help="do not start the HTTP and websocket servers")
    return parser.parse_args(argv)

def build_gym(db_path: str) -> Gym:
    gym = Gym(GymStore(db_path), Locator())
    gym.defaults()
    return gym

def select_program(gym: Gym, name: str) -> None:
    for program in gym.get_programs():
        if program.name == name:
            gym.select(program)
            return
    logger.warning(f"No program named {name!r}, starting without a program")

def start_threads(gym: Gym, rower: Rower, api: bool = True):
    """Start all necessary background tasks."""

    # Thread polling the rower, decoding its frames and evaluating them against the selected program
    rower.start()
    threads.append(rower.thread)

    if api:
        http_thread = threading.Thread(target=http_task, args=(gym,), daemon=True, name="HTTPServerThread")
        threads.append(http_thread)

        ws_thread = threading.Thread(target=lambda: asyncio.run(ws_task(gym)), daemon=True, name="WSServerThread")
        threads.append(ws_thread)

        logger.debug("rowgym.start_threads: about to start API threads")
        http_thread.start()
        ws_thread.start()

    logger.debug("rowgym.start_threads: creating and starting monitor_threads task")
    monitor_thread = threading.Thread(target=monitor_threads, daemon=True, name="MonitorThread")
    threads.append(monitor_thread)
    monitor_thread.start()

def monitor_threads():
    """Periodically check thread health and log if any thread is not alive."""
    while True:
        for thread in threads:
            if not thread.is_alive():
                logger.warning(f"Thread {thread.name} is not alive!")
        time.sleep(10)  # Check every 10 seconds

def stop_threads(signal_received, frame):
    """Handle graceful shutdown on Ctrl+C."""
    print("\nStopping RowGym...")
    sys.exit(0)

def main(argv=None) -> int:
    args = parse_args(argv)
    gym = build_gym(args.db)
    if args.program:
        select_program(gym, args.program)

    if args.replay:
        rower = Rower(BufferByteSource(), gym)
        rower.replay(args.replay)
        print(gym.measurement)
        return 0

    print("Starting RowGym...")

    # Handle Ctrl+C to stop gracefully
    signal.signal(signal.SIGINT, stop_threads)

    rower = Rower(SerialByteSource(args.port), gym, trace=LogTrace())
    start_threads(gym, rower, api=not args.no_api)

    # Keep main thread running
    while True:
        signal.pause()

if __name__ == "__main__":
    sys.exit(main())
