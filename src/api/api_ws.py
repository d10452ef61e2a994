import logging
import asyncio
import json
import time

from websockets.asyncio.server import (
    serve,
    ServerConnection,
    )
from src.gym.gym import Gym
from src.api.api_http import progress_to_dict

logger = logging.getLogger(__name__)

WS_HOST = "0.0.0.0"
WS_PORT = 8765
BROADCAST_INTERVAL = 1      # Seconds between broadcasts of the live measurement

clients: set[ServerConnection] = set()

def compile_metrics(gym: Gym) -> dict[str, int | float | str | dict]:
    logger.debug("Compiling metrics")
    with gym.lock:
        values = gym.measurement.as_dict()
        progress = progress_to_dict(gym)

    return {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "stroke_rate_pm": values['stroke_rate'],
        "stroke_count": values['strokes'],
        "heart_rate_bpm": values['pulse'],
        "speed_mps": round(values['speed'] / 100, 2),
        "pace_mmss": f"{(s := round(50000 / values['speed']) if values['speed'] else 0) // 60}:{s % 60:02}",
        "total_distance_m": values['distance'],
        "elapsed_time": values['duration'],
        "total_calories": values['energy'],
        "progress": progress,
    }

async def broadcast(gym: Gym) -> None:
    logger.debug("Preparing broadcast loop")
    while True:
        if clients:
            message = json.dumps(compile_metrics(gym))
            await asyncio.gather(*[client.send(message) for client in list(clients)], return_exceptions=True)
        await asyncio.sleep(BROADCAST_INTERVAL)

async def handler(websocket: ServerConnection) -> None:
    logger.debug("Handling new client connection")
    clients.add(websocket)
    try:
        await websocket.wait_closed()
    finally:
        clients.remove(websocket)

async def ws_task(gym: Gym, host: str = WS_HOST, port: int = WS_PORT) -> None:
    logger.debug("Starting websocket server")
    async with serve(handler, host, port):
        await asyncio.gather(
            broadcast(gym),
            asyncio.Future()
        )
