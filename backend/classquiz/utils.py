import itertools
import random
import time
import uuid
from datetime import datetime, timezone

_join_counter = itertools.count(1)


def now_ts() -> float:
    return time.time()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def next_join_seq() -> int:
    return next(_join_counter)


def generate_join_code() -> str:
    return str(random.randint(100000, 999999))


def sort_leaderboard(participants: list[dict]) -> list[dict]:
    # join_seq is the join order; joined_at is only for display.
    return sorted(participants, key=lambda p: (-p.get("score", 0), p.get("join_seq", 0)))
