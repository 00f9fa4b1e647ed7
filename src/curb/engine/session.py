"""Session identity helpers."""

from __future__ import annotations

import random
from datetime import datetime

from curb.engine.models import Session

ANIMAL_NAMES = (
    "badger",
    "beaver",
    "bison",
    "crane",
    "falcon",
    "fox",
    "heron",
    "ibex",
    "lynx",
    "marten",
    "narwhal",
    "otter",
    "panda",
    "puffin",
    "raven",
    "stoat",
    "tapir",
    "walrus",
    "weasel",
    "wombat",
)


def new_session(
    *,
    name: str | None = None,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> Session:
    """Create a session id of the form `<name>-<YYYYMMDD-HHMMSS>`."""

    started_at = now or datetime.now().astimezone()
    session_name = (name or "").strip() or (rng or random).choice(ANIMAL_NAMES)  # noqa: S311
    session_id = f"{session_name}-{started_at:%Y%m%d-%H%M%S}"
    return Session(session_id=session_id, name=session_name, started_at=started_at)
