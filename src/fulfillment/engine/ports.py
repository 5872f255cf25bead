"""Collaborators injected into the engines.

The engines never read the wall clock, mint identifiers or talk to a mail
server directly; they go through these small interfaces so tests can swap in
deterministic versions.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from fulfillment.db.models import Notification


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...


@runtime_checkable
class IdGenerator(Protocol):
    def new_id(self, kind: str) -> str: ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers a notification somewhere (mail, chat, log).

    Implementations may be slow or fail; callers never wait on them inside a
    transaction.
    """

    async def send(self, notification: Notification) -> None: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class UuidIdGenerator:
    def new_id(self, kind: str) -> str:
        return f"{kind}_{uuid.uuid4().hex}"
