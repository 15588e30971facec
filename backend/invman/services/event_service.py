# Overview: Service-layer operations for the event log; append-only lifecycle records.

from __future__ import annotations

from typing import Iterator, Optional

from ..extensions import db
from ..models import Event
from .concurrency import storage_errors
"""
Event Log Invariants

- Append-only: no updates/deletes of existing events.
- No domain logic here.
- Events are written inside the same DB transaction as the action they record,
  so append_event flushes but never commits.
"""


def append_event(
    *,
    action_no: int,
    dispatcher: int,
    target: Optional[int] = None,
    reason: Optional[str] = None,
) -> Event:
    """Append one event to the caller's open transaction."""
    ev = Event(
        action_no=action_no,
        dispatcher=dispatcher,
        target=target,
        reason=reason,
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def list_events(
    *,
    action_no: Optional[int] = None,
    dispatcher: Optional[int] = None,
    target: Optional[int] = None,
    limit: Optional[int] = None,
) -> Iterator[Event]:
    """Events in the order they were appended, optionally filtered."""
    q = db.session.query(Event)
    if action_no is not None:
        q = q.filter(Event.action_no == action_no)
    if dispatcher is not None:
        q = q.filter(Event.dispatcher == dispatcher)
    if target is not None:
        q = q.filter(Event.target == target)
    q = q.order_by(Event.id.asc())
    if limit is not None:
        q = q.limit(limit)

    with storage_errors():
        yield from q.yield_per(100)
