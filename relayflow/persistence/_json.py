"""JSON helpers shared by the database backends."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic_core import to_jsonable_python

from .models import TransactionError


def dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_jsonable_python(value))


def load(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    if value is None:
        return None
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return value


def dump_error(error: Optional[TransactionError]) -> Optional[str]:
    return error.model_dump_json() if error is not None else None


def load_error(value: Any) -> Optional[TransactionError]:
    data = load(value)
    return TransactionError.model_validate(data) if data is not None else None


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    # stored as UTC ISO text so deadlines compare correctly as strings
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
