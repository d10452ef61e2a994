# Lightweight API server for RowGym
import logging

from dataclasses import asdict
from typing import Any

from flask import Flask, jsonify, request

from src.gym.gym import Gym
from src.gym.program import Program, Workout
from src.db.db_store import ReferenceMissingError, StoreError

logger = logging.getLogger(__name__)

HTTP_HOST = "127.0.0.1"
HTTP_PORT = 5000


def program_to_dict(program: Program) -> dict[str, Any]:
    return {
        "id": program.id,
        "name": program.name,
        "duration_estimate_secs": program.as_duration(),
        "segments": [
            dict(asdict(segment), difficulty=segment.difficulty.name)
            for segment in program.segments
        ],
    }


def workout_to_dict(workout: Workout) -> dict[str, Any]:
    return asdict(workout)


def progress_to_dict(gym: Gym) -> dict[str, Any]:
    with gym.lock:
        progress = gym.progress
        return {
            "state": gym.state.name,
            "program": gym.program.name if gym.program else None,
            "segment_index": gym.program.index_of(progress.segment) if progress and gym.program else None,
            "achieved": progress.achieved(gym.measurement) if progress else 0,
            "completion": round(gym.completion(), 3),
            "in_limit": gym.in_limit(),
        }


def create_app(gym: Gym) -> Flask:
    app = Flask(__name__)

    @app.errorhandler(ReferenceMissingError)
    def handle_missing(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(StoreError)
    def handle_store_error(e):
        logger.warning(f"Store error serving {request.path}: {e}")
        return jsonify({"error": str(e)}), 400

    @app.route("/measurement")
    def get_measurement():
        with gym.lock:
            return jsonify(gym.measurement.as_dict())

    @app.route("/progress")
    def get_progress():
        return jsonify(progress_to_dict(gym))

    @app.route("/programs")
    def get_programs():
        return jsonify([program_to_dict(p) for p in gym.get_programs()])

    @app.route("/programs/<int:program_id>/select", methods=["POST"])
    def select_program(program_id: int):
        program = gym.get_program(program_id)
        gym.select(program)
        return jsonify(progress_to_dict(gym))

    @app.route("/deselect", methods=["POST"])
    def deselect():
        gym.deselect()
        return jsonify(progress_to_dict(gym))

    @app.route("/workouts")
    def get_workouts():
        from_ms = request.args.get("from", type=int)
        to_ms = request.args.get("to", type=int)
        return jsonify([workout_to_dict(w) for w in gym.get_workouts(from_ms, to_ms)])

    @app.route("/workouts/<int:workout_id>/repeat", methods=["POST"])
    def repeat_workout(workout_id: int):
        gym.repeat_workout(gym.get_workout(workout_id))
        return jsonify(progress_to_dict(gym))

    @app.route("/workouts/<int:workout_id>", methods=["DELETE"])
    def delete_workout(workout_id: int):
        gym.delete(gym.get_workout(workout_id))
        return "", 204

    return app


def http_task(gym: Gym, host: str = HTTP_HOST, port: int = HTTP_PORT) -> None:
    logger.debug(f"Starting HTTP API on {host}:{port}")
    create_app(gym).run(host=host, port=port, debug=False, use_reloader=False)
