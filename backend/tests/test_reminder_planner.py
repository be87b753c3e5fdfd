from __future__ import annotations

from datetime import date, datetime, timezone

from freelance_billing.reminder_planner import (
    AUTOMATIC_KINDS,
    PlannedReminder,
    ReminderKind,
    RepetitionCode,
    normalize_policy,
    plan,
)


def _as_map(planned: list[PlannedReminder]) -> dict[str, date]:
    return {item.kind.value: item.trigger_date for item in planned}


def test_plan_maps_legacy_labels_to_trigger_dates() -> None:
    planned = plan(date(2025, 6, 10), ["3", "7", "Only on Due date"])

    assert _as_map(planned) == {
        "minus3": date(2025, 6, 7),
        "plus7": date(2025, 6, 17),
        "onDue": date(2025, 6, 10),
    }
    assert [item.kind for item in planned] == [ReminderKind.MINUS_3, ReminderKind.PLUS_7, ReminderKind.ON_DUE]


def test_plan_covers_every_offset() -> None:
    planned = plan(date(2025, 1, 31), ["minus3", "onDue", "plus7", "plus10", "plus15"])

    assert _as_map(planned) == {
        "minus3": date(2025, 1, 28),
        "onDue": date(2025, 1, 31),
        "plus7": date(2025, 2, 7),
        "plus10": date(2025, 2, 10),
        "plus15": date(2025, 2, 15),
    }


def test_plan_is_deterministic() -> None:
    policy = ["15", "3", "10"]
    assert plan(date(2025, 3, 1), policy) == plan(date(2025, 3, 1), policy)


def test_plan_deduplicates_codes_and_legacy_aliases() -> None:
    planned = plan(date(2025, 6, 10), ["7", "plus7", "7", "onDue", "Only on Due date"])

    assert [item.kind for item in planned] == [ReminderKind.PLUS_7, ReminderKind.ON_DUE]


def test_plan_ignores_unknown_codes() -> None:
    planned = plan(date(2025, 6, 10), ["42", "10", "", "weekly"])

    assert planned == [PlannedReminder(kind=ReminderKind.PLUS_10, trigger_date=date(2025, 6, 20))]


def test_plan_with_empty_or_missing_policy_is_empty() -> None:
    assert plan(date(2025, 6, 10), []) == []
    assert plan(date(2025, 6, 10), None) == []


def test_plan_accepts_datetime_due_dates() -> None:
    planned = plan(datetime(2025, 6, 10, 23, 30, tzinfo=timezone.utc), ["onDue"])

    assert planned[0].trigger_date == date(2025, 6, 10)


def test_repetition_code_parse() -> None:
    assert RepetitionCode.parse(" 15 ") is RepetitionCode.PLUS_15
    assert RepetitionCode.parse("Only on Due date") is RepetitionCode.ON_DUE
    assert RepetitionCode.parse("minus3") is RepetitionCode.MINUS_3
    assert RepetitionCode.parse(RepetitionCode.PLUS_10) is RepetitionCode.PLUS_10
    assert RepetitionCode.parse("manual") is None
    assert RepetitionCode.parse("bogus") is None


def test_normalize_policy_keeps_first_occurrence_order() -> None:
    assert normalize_policy(["10", "3", "10"]) == [RepetitionCode.PLUS_10, RepetitionCode.MINUS_3]


def test_manual_kind_is_not_automatic() -> None:
    assert ReminderKind.MANUAL.automatic is False
    assert ReminderKind.MANUAL not in AUTOMATIC_KINDS
    assert len(AUTOMATIC_KINDS) == 5
