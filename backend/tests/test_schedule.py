from datetime import timedelta

import pytest

from fakes import NOW
from fpl_refresh.refresh.schedule import InvalidScheduleError, generate_schedule_windows, validate_windows
from fpl_refresh.refresh.state_detector import FixtureState


def _fixture(id, kickoff):
    return FixtureState(id=id, gameweek_id=4, kickoff_time=kickoff)


def test_fixtures_sharing_a_kickoff_share_windows():
    kickoff = NOW + timedelta(hours=2)
    windows = generate_schedule_windows([_fixture(2, kickoff), _fixture(1, kickoff)], NOW)

    assert windows == [
        {
            "job_type": "live-update",
            "start_time": (kickoff - timedelta(minutes=15)).isoformat(),
            "end_time": (kickoff + timedelta(minutes=120)).isoformat(),
            "match_ids": [1, 2],
        },
        {
            "job_type": "post-match",
            "start_time": (kickoff + timedelta(minutes=120)).isoformat(),
            "end_time": (kickoff + timedelta(minutes=360)).isoformat(),
            "match_ids": [1, 2],
        },
    ]


def test_old_and_unscheduled_fixtures_are_ignored():
    fixtures = [
        _fixture(1, NOW - timedelta(hours=30)),
        FixtureState(id=2, gameweek_id=None, kickoff_time=None),
    ]
    assert generate_schedule_windows(fixtures, NOW) == []


@pytest.mark.parametrize("windows", [
    [],
    None,
    [{"job_type": "unknown", "start_time": NOW.isoformat(), "end_time": NOW.isoformat()}],
    [{"job_type": "live-update", "start_time": NOW.isoformat(), "end_time": (NOW - timedelta(hours=1)).isoformat()}],
])
def test_invalid_windows_are_rejected(windows):
    with pytest.raises(InvalidScheduleError):
        validate_windows(windows)


def test_validate_windows_normalises_rows():
    rows = validate_windows([{
        "job_type": "post-match",
        "start_time": "2024-09-14T15:00:00Z",
        "end_time": "2024-09-14T19:00:00Z",
        "match_ids": ["7"],
    }])
    assert rows == [{
        "job_type": "post-match",
        "start_time": NOW.isoformat(),
        "end_time": (NOW + timedelta(hours=4)).isoformat(),
        "match_ids": [7],
    }]
