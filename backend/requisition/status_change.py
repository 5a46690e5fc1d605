from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from django.utils import timezone


@dataclass(frozen=True)
class StatusChange:
    """One accepted transition; ``previous_status_change_id`` links to its predecessor."""

    requisition_id: str | None
    status: str
    author_id: str
    created_date: datetime = field(default_factory=timezone.now)
    previous_status_change_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


def latest(changes: Iterable[StatusChange]) -> StatusChange | None:
    ordered = list(changes)
    if not ordered:
        return None
    # Ties go to the most recently appended record.
    return max(reversed(ordered), key=lambda change: change.created_date)
