import threading
import logging
import sqlite3

from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, Optional, Union

from src.gym.program import (
    Difficulty,
    Location,
    Program,
    Segment,
    Snapshot,
    Workout,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "db_schema.sql"

SEGMENT_COLUMNS = ('distance', 'strokes', 'energy', 'duration', 'speed', 'pulse', 'stroke_rate')
SNAPSHOT_COLUMNS = ('distance', 'strokes', 'duration', 'energy', 'pulse', 'speed', 'stroke_rate')


# CUSTOM EXCEPTIONS
class StoreError(Exception):
    pass

class ReferenceMissingError(LookupError):
    pass

class ProgramDeletedError(ReferenceMissingError):
    pass


def load_schema() -> str:
    with open(SCHEMA_PATH, encoding="utf-8") as f:
        return f.read()


class GymStore:
    '''
    sqlite3 backed store for programs, workouts and snapshots.

    The connection is shared between the polling thread and the API threads, so every
    access goes through one lock. Lookups of an entity that no longer exists raise
    ReferenceMissingError (ProgramDeletedError for programs), while malformed queries
    and database failures raise StoreError.
    '''

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self.conn.executescript(load_schema())
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        '''Group statements into one atomic unit. Nested transactions join the outer one.'''
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
                if self._depth == 1:
                    self.conn.commit()
            except sqlite3.Error as e:
                if self._depth == 1:
                    self._rollback()
                raise StoreError(str(e)) from e
            except BaseException:
                if self._depth == 1:
                    self._rollback()
                raise
            finally:
                self._depth -= 1

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except sqlite3.Error as e:
            # A closed or broken connection has nothing left to roll back
            logger.error(f"Rollback failed: {e}")

    # Programs

    def count_programs(self) -> int:
        with self.transaction() as conn:
            return conn.execute("SELECT COUNT(*) FROM programs").fetchone()[0]

    def _load_segments(self, conn: sqlite3.Connection, program_id: int) -> list[Segment]:
        rows = conn.execute(
            "SELECT * FROM segments WHERE program_id = ? ORDER BY position ASC", (program_id,)
        ).fetchall()
        return [
            Segment(Difficulty[row['difficulty']], id=row['id'], **{c: row[c] for c in SEGMENT_COLUMNS})
            for row in rows
        ]

    def _program_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Program:
        return Program(row['name'], self._load_segments(conn, row['id']), id=row['id'])

    def get_programs(self) -> list[Program]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM programs ORDER BY id ASC").fetchall()
            return [self._program_from_row(conn, row) for row in rows]

    def find_program(self, name: str) -> Optional[Program]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM programs WHERE name = ? ORDER BY id ASC LIMIT 1", (name,)).fetchone()
            return self._program_from_row(conn, row) if row else None

    def lookup_program(self, program_id: int) -> Program:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM programs WHERE id = ?", (program_id,)).fetchone()
            if row is None:
                raise ProgramDeletedError(f"Program {program_id} no longer exists")
            return self._program_from_row(conn, row)

    def merge_program(self, program: Program) -> Program:
        '''Insert or update the program together with its segments, in their current order.'''
        with self.transaction() as conn:
            if program.id is None:
                cursor = conn.execute("INSERT INTO programs (name) VALUES (?)", (program.name,))
                program.id = cursor.lastrowid
            else:
                conn.execute(
                    "INSERT INTO programs (id, name) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET name = excluded.name",
                    (program.id, program.name),
                )
                conn.execute("DELETE FROM segments WHERE program_id = ?", (program.id,))

            for position, segment in enumerate(program.segments):
                cursor = conn.execute(
                    f"INSERT INTO segments (program_id, position, difficulty, {', '.join(SEGMENT_COLUMNS)}) "
                    f"VALUES (?, ?, ?, {', '.join('?' * len(SEGMENT_COLUMNS))})",
                    (program.id, position, segment.difficulty.name, *(getattr(segment, c) for c in SEGMENT_COLUMNS)),
                )
                segment.id = cursor.lastrowid
        logger.debug(f"Merged program {program}")
        return program

    def delete_program(self, program: Program) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM programs WHERE id = ?", (program.id,))
        logger.info(f"Deleted program {program}")

    # Workouts

    def _workout_from_row(self, row: sqlite3.Row) -> Workout:
        location = None
        if row['latitude'] is not None and row['longitude'] is not None:
            location = Location(row['latitude'], row['longitude'], row['accuracy'], row['provider'] or "")
        return Workout(
            program_id=row['program_id'],
            program_name=row['program_name'],
            start=row['start'],
            location=location,
            evaluate=bool(row['evaluate']),
            distance=row['distance'],
            duration=row['duration'],
            strokes=row['strokes'],
            energy=row['energy'],
            id=row['id'],
        )

    def merge_workout(self, workout: Workout) -> Workout:
        '''
        Insert a new workout, or update a stored one.
        Raises:
            ReferenceMissingError: If the workout has an id but its row has been deleted.
        '''
        location = workout.location
        values = (
            workout.program_id,
            workout.program_name,
            workout.start,
            location.latitude if location else None,
            location.longitude if location else None,
            location.accuracy if location else None,
            location.provider if location else None,
            int(workout.evaluate),
            workout.distance,
            workout.duration,
            workout.strokes,
            workout.energy,
        )
        columns = "program_id, program_name, start, latitude, longitude, accuracy, provider, evaluate, distance, duration, strokes, energy"
        with self.transaction() as conn:
            if workout.id is None:
                cursor = conn.execute(f"INSERT INTO workouts ({columns}) VALUES ({', '.join('?' * len(values))})", values)
                workout.id = cursor.lastrowid
            else:
                # INSERT OR REPLACE would delete the row and cascade to its snapshots
                assignments = ', '.join(f"{c.strip()} = ?" for c in columns.split(','))
                cursor = conn.execute(f"UPDATE workouts SET {assignments} WHERE id = ?", (*values, workout.id))
                if cursor.rowcount == 0:
                    raise ReferenceMissingError(f"Workout {workout.id} no longer exists")
        return workout

    def lookup_workout(self, workout_id: int) -> Workout:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM workouts WHERE id = ?", (workout_id,)).fetchone()
        if row is None:
            raise ReferenceMissingError(f"Workout {workout_id} no longer exists")
        return self._workout_from_row(row)

    def get_workouts(self) -> list[Workout]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM workouts ORDER BY start DESC").fetchall()
        return [self._workout_from_row(row) for row in rows]

    def get_workouts_between(self, from_ms: int, to_ms: int) -> list[Workout]:
        '''Evaluated workouts whose start lies within [from_ms, to_ms).'''
        if from_ms > to_ms:
            raise StoreError(f"Invalid workout range: {from_ms} is after {to_ms}")
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM workouts WHERE evaluate = 1 AND start >= ? AND start < ? ORDER BY start DESC",
                (from_ms, to_ms),
            ).fetchall()
        return [self._workout_from_row(row) for row in rows]

    def delete_workout(self, workout: Workout) -> None:
        '''Delete the workout and all of its snapshots atomically.'''
        with self.transaction() as conn:
            conn.execute("DELETE FROM snapshots WHERE workout_id = ?", (workout.id,))
            conn.execute("DELETE FROM workouts WHERE id = ?", (workout.id,))
        logger.info(f"Deleted workout {workout.id}")

    def add_workout(self, program_name: str, workout: Workout, snapshots: list[Snapshot]) -> Workout:
        '''Store an imported workout with its snapshots, linked to the program of the given name if any.'''
        with self.transaction():
            workout.evaluate = False
            workout.id = None
            program = self.find_program(program_name)
            workout.program_id = program.id if program else None
            workout.program_name = program_name
            self.merge_workout(workout)
            for snapshot in snapshots:
                self.insert_snapshot(replace(snapshot, workout_id=workout.id, id=None))
        logger.info(f"Imported workout {workout.id} with {len(snapshots)} snapshots")
        return workout

    # Snapshots

    def insert_snapshot(self, snapshot: Snapshot) -> Snapshot:
        if snapshot.workout_id is None:
            raise StoreError("A snapshot must belong to a stored workout")
        with self.transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO snapshots (workout_id, {', '.join(SNAPSHOT_COLUMNS)}) "
                f"VALUES (?, {', '.join('?' * len(SNAPSHOT_COLUMNS))})",
                (snapshot.workout_id, *(getattr(snapshot, c) for c in SNAPSHOT_COLUMNS)),
            )
        return replace(snapshot, id=cursor.lastrowid)

    def get_snapshots(self, workout: Workout) -> list[Snapshot]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots WHERE workout_id = ? ORDER BY id ASC", (workout.id,)
            ).fetchall()
        return [
            Snapshot(workout_id=row['workout_id'], id=row['id'], **{c: row[c] for c in SNAPSHOT_COLUMNS})
            for row in rows
        ]
