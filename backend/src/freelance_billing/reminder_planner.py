"""Derive reminder trigger dates from an invoice due date and repetition policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable

logger = logging.getLogger(__name__)


class ReminderKind(str, Enum):
    MINUS_3 = "minus3"
    ON_DUE = "onDue"
    PLUS_7 = "plus7"
    PLUS_10 = "plus10"
    PLUS_15 = "plus15"
    MANUAL = "manual"

    @property
    def automatic(self) -> bool:
        return self is not ReminderKind.MANUAL


class RepetitionCode(str, Enum):
    MINUS_3 = "minus3"
    ON_DUE = "onDue"
    PLUS_7 = "plus7"
    PLUS_10 = "plus10"
    PLUS_15 = "plus15"

    @property
    def kind(self) -> ReminderKind:
        return ReminderKind(self.value)

    @property
    def offset(self) -> timedelta:
        return _OFFSETS[self]

    @classmethod
    def parse(cls, raw: object) -> RepetitionCode | None:
        if isinstance(raw, RepetitionCode):
            return raw
        normalized = str(raw).strip()
        if normalized in _LEGACY_LABELS:
            return _LEGACY_LABELS[normalized]
        try:
            return cls(normalized)
        except ValueError:
            return None


_OFFSETS: dict[RepetitionCode, timedelta] = {
    RepetitionCode.MINUS_3: timedelta(days=-3),
    RepetitionCode.ON_DUE: timedelta(days=0),
    RepetitionCode.PLUS_7: timedelta(days=7),
    RepetitionCode.PLUS_10: timedelta(days=10),
    RepetitionCode.PLUS_15: timedelta(days=15),
}

# Labels persisted by the first version of the invoicing UI.
_LEGACY_LABELS: dict[str, RepetitionCode] = {
    "3": RepetitionCode.MINUS_3,
    "Only on Due date": RepetitionCode.ON_DUE,
    "7": RepetitionCode.PLUS_7,
    "10": RepetitionCode.PLUS_10,
    "15": RepetitionCode.PLUS_15,
}

AUTOMATIC_KINDS: frozenset[ReminderKind] = frozenset(kind for kind in ReminderKind if kind.automatic)


@dataclass(frozen=True)
class PlannedReminder:
    kind: ReminderKind
    trigger_date: date


def normalize_policy(policy: Iterable[object] | None) -> list[RepetitionCode]:
    """Parse a stored or submitted policy into an ordered, duplicate-free code list.

    Unknown entries are dropped so that one stale label never disables the
    remaining reminders of an invoice.
    """
    if not policy:
        return []
    codes: list[RepetitionCode] = []
    for raw in policy:
        code = RepetitionCode.parse(raw)
        if code is None:
            logger.debug("ignoring unsupported repetition code %r", raw)
            continue
        if code not in codes:
            codes.append(code)
    return codes


def plan(due_date: date, policy: Iterable[object] | None) -> list[PlannedReminder]:
    if isinstance(due_date, datetime):
        due_date = due_date.date()
    return [
        PlannedReminder(kind=code.kind, trigger_date=due_date + code.offset)
        for code in normalize_policy(policy)
    ]
