from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from hydrotrack.dates import next_monday
from hydrotrack.models import GoalRange, UserSettings, WeeklySummary
from hydrotrack.services import goals
from hydrotrack.services.aggregates import create_entry
from hydrotrack.services.goals import (
    HISTORY_START,
    check_coverage,
    goal_on_date,
    goal_timeline,
    goals_on_dates,
    seed_goal_history,
    set_goal,
)
from hydrotrack.services.users import upsert_user_settings


def _ranges(db, user_id):
    return [
        (float(r.daily_goal), r.effective_from_date, r.effective_until_date)
        for r in goal_timeline(db, user_id)
    ]


def test_onboarding_seeds_one_open_range(onboard, session_factory):
    user_id = onboard(daily_goal=72)
    with session_factory() as db:
        assert _ranges(db, user_id) == [(72.0, HISTORY_START, None)]
        assert goal_on_date(db, user_id, date(2024, 6, 1)) == 72.0


def test_seed_is_backdated_to_first_entry_week(session_factory, cache):
    with session_factory() as db:
        create_entry(
            db, cache,
            user_id="early-bird",
            ounces=8,
            classification="manual",
            timestamp=datetime(2024, 3, 6, 9, 0, tzinfo=timezone.utc),
        )
    with session_factory() as db:
        seed = seed_goal_history(db, "early-bird", 64)
        db.commit()
        assert seed.effective_from_date == date(2024, 3, 4)
        # Second call is a no-op
        assert seed_goal_history(db, "early-bird", 100) is None
        assert len(goal_timeline(db, "early-bird")) == 1


def test_set_goal_closes_previous_range(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        new_range = set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)
        assert new_range.effective_from_date == date(2024, 3, 4)
        assert new_range.effective_until_date is None

    with session_factory() as db:
        assert _ranges(db, user_id) == [
            (64.0, HISTORY_START, date(2024, 3, 3)),
            (80.0, date(2024, 3, 4), None),
        ]
        assert goal_on_date(db, user_id, date(2024, 3, 3)) == 64.0
        assert goal_on_date(db, user_id, date(2024, 3, 4)) == 80.0
        assert goal_on_date(db, user_id, date(2030, 1, 1)) == 80.0
        assert check_coverage(goal_timeline(db, user_id)) == []

        user = db.get(UserSettings, user_id)
        assert float(user.daily_goal) == 80.0


def test_earlier_change_replaces_scheduled_ranges(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)
    with session_factory() as db:
        set_goal(db, user_id, 70, effective_from=date(2024, 2, 5), cache=cache)

    with session_factory() as db:
        assert _ranges(db, user_id) == [
            (64.0, HISTORY_START, date(2024, 2, 4)),
            (70.0, date(2024, 2, 5), None),
        ]
        assert goal_on_date(db, user_id, date(2024, 3, 10)) == 70.0
        assert check_coverage(goal_timeline(db, user_id)) == []


def test_same_start_date_replaces_goal(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)
    with session_factory() as db:
        set_goal(db, user_id, 90, effective_from=date(2024, 3, 4), cache=cache)

    with session_factory() as db:
        assert _ranges(db, user_id) == [
            (64.0, HISTORY_START, date(2024, 3, 3)),
            (90.0, date(2024, 3, 4), None),
        ]


def test_set_goal_defaults_to_next_monday(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        new_range = set_goal(db, user_id, 96, cache=cache)
        expected = next_monday("UTC")
        assert new_range.effective_from_date == expected
        # Today still resolves to the old goal
        assert goal_on_date(db, user_id, expected - timedelta(days=1)) == 64.0
        assert goal_on_date(db, user_id, expected) == 96.0


def test_set_goal_for_unknown_user_creates_settings(session_factory, cache):
    with session_factory() as db:
        set_goal(db, "newcomer", 50, effective_from=date(2024, 1, 1), cache=cache)
    with session_factory() as db:
        assert db.get(UserSettings, "newcomer") is not None
        ranges = _ranges(db, "newcomer")
        assert ranges[-1] == (50.0, date(2024, 1, 1), None)
        assert check_coverage(goal_timeline(db, "newcomer")) == []


def test_goal_without_history_falls_back(session_factory):
    with session_factory() as db:
        assert goal_on_date(db, "nobody", date(2024, 3, 4)) == 64.0

        db.add(UserSettings(user_id="legacy", timezone="UTC", daily_goal=100))
        db.commit()
        assert goal_on_date(db, "legacy", date(2024, 3, 4)) == 100.0
        assert goals_on_dates(db, "legacy", [date(2024, 3, 4)]) == {date(2024, 3, 4): 100.0}


def test_goals_on_dates_matches_single_lookups(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)
    with session_factory() as db:
        set_goal(db, user_id, 90, effective_from=date(2024, 3, 11), cache=cache)

    days = [date(2024, 3, 1) + timedelta(days=i) for i in range(20)]
    with session_factory() as db:
        batch = goals_on_dates(db, user_id, days)
        for day in days:
            assert batch[day] == goal_on_date(db, user_id, day)
        assert batch[date(2024, 3, 3)] == 64.0
        assert batch[date(2024, 3, 10)] == 80.0
        assert batch[date(2024, 3, 11)] == 90.0

        # ISO strings are accepted too
        assert goals_on_dates(db, user_id, ["2024-03-05T00:00:00Z"]) == {date(2024, 3, 5): 80.0}


def test_goal_change_recounts_days_goal_met(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        write = create_entry(
            db, cache,
            user_id=user_id,
            ounces=70,
            classification="manual",
            timestamp=datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc),
        )
        assert write.days_goal_met == 1

    with session_factory() as db:
        set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)

    with session_factory() as db:
        summary = db.get(WeeklySummary, (user_id, date(2024, 3, 4)))
        assert summary.days_with_data == 1
        assert summary.days_goal_met == 0


def test_goal_change_does_not_touch_earlier_weeks(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        create_entry(
            db, cache,
            user_id=user_id,
            ounces=70,
            classification="manual",
            timestamp=datetime(2024, 2, 27, 9, 0, tzinfo=timezone.utc),
        )
    with session_factory() as db:
        set_goal(db, user_id, 80, effective_from=date(2024, 3, 4), cache=cache)

    with session_factory() as db:
        summary = db.get(WeeklySummary, (user_id, date(2024, 2, 26)))
        assert summary.days_goal_met == 1


def test_check_coverage_reports_problems():
    ranges = [
        GoalRange(daily_goal=64, effective_from_date=date(2024, 1, 1), effective_until_date=date(2024, 1, 31)),
        # gap: Feb 1 - Feb 4
        GoalRange(daily_goal=70, effective_from_date=date(2024, 2, 5), effective_until_date=date(2024, 3, 10)),
        # overlap: Mar 4 - Mar 10
        GoalRange(daily_goal=80, effective_from_date=date(2024, 3, 4), effective_until_date=date(2024, 4, 1)),
    ]
    issues = check_coverage(ranges)
    kinds = [(i.kind, i.start, i.end) for i in issues]
    assert ("gap", date(2024, 2, 1), date(2024, 2, 4)) in kinds
    assert ("overlap", date(2024, 3, 4), date(2024, 3, 10)) in kinds
    assert ("closed_tail", date(2024, 4, 2), None) in kinds


def test_check_coverage_open_range_in_middle():
    ranges = [
        GoalRange(daily_goal=64, effective_from_date=date(2024, 1, 1), effective_until_date=None),
        GoalRange(daily_goal=70, effective_from_date=date(2024, 2, 5), effective_until_date=None),
    ]
    assert [i.kind for i in check_coverage(ranges)] == ["open_before_end"]


def test_ranges_never_overlap_after_many_changes(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    starts = [date(2024, 5, 6), date(2024, 3, 4), date(2024, 4, 1), date(2024, 4, 1), date(2024, 6, 3)]
    for i, start in enumerate(starts):
        with session_factory() as db:
            set_goal(db, user_id, 60 + i * 5, effective_from=start, cache=cache)

    with session_factory() as db:
        ranges = goal_timeline(db, user_id)
        assert check_coverage(ranges) == []
        open_ranges = [r for r in ranges if r.effective_until_date is None]
        assert len(open_ranges) == 1
        assert open_ranges[0].effective_from_date == date(2024, 6, 3)
        rows = db.scalars(select(GoalRange.effective_from_date).where(GoalRange.user_id == user_id)).all()
        assert len(rows) == len(set(rows))


def test_settings_edit_and_goal_change_commit_together(onboard, session_factory, cache):
    user_id = onboard(daily_goal=64)
    with session_factory() as db:
        upsert_user_settings(db, cache, user_id, timezone="Europe/Paris", daily_goal=100)

    with session_factory() as db:
        user = db.get(UserSettings, user_id)
        assert user.timezone == "Europe/Paris"
        assert float(user.daily_goal) == 100.0
        start = next_monday("Europe/Paris")
        assert _ranges(db, user_id) == [
            (64.0, HISTORY_START, start - timedelta(days=1)),
            (100.0, start, None),
        ]


def test_failed_goal_change_rolls_back_the_settings_edit(onboard, session_factory, cache, monkeypatch):
    user_id = onboard(daily_goal=64)

    def fail(*args, **kwargs):
        raise RuntimeError("lost connection")

    monkeypatch.setattr(goals, "seed_goal_history", fail)
    with session_factory() as db:
        with pytest.raises(RuntimeError):
            upsert_user_settings(db, cache, user_id, timezone="Europe/Paris", sip_size="large", daily_goal=100)

    with session_factory() as db:
        user = db.get(UserSettings, user_id)
        assert user.timezone == "UTC"
        assert user.sip_size == "medium"
        assert float(user.daily_goal) == 64.0
        assert _ranges(db, user_id) == [(64.0, HISTORY_START, None)]
