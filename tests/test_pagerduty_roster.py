from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pagerduty
import pytest

from pagerduty_roster import CURRENT_ONCALL_HORIZON, PagerDutyRoster, emails_for_unit
from sync_config import RosterQueryError, SyncUnit


def make_unit(*schedule_ids):
    return SyncUnit(
        schedule_ids=tuple(schedule_ids),
        all_oncall_group_handle="all-oncall-platforms",
        current_oncall_group_handle="current-oncall-platform",
    )


def test_on_call_emails_queries_schedule_users_window():
    client = MagicMock()
    client.rget.return_value = [
        {"id": "PU1", "email": "jane@example.com"},
        {"id": "PU2", "email": "john@example.com"},
        {"id": "PU1", "email": "jane@example.com"},
    ]
    roster = PagerDutyRoster("token", client=client)
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    emails = roster.on_call_emails("PSCHED1", timedelta(hours=2), now=now)

    assert emails == ["jane@example.com", "john@example.com"]
    client.rget.assert_called_once_with(
        "schedules/PSCHED1/users",
        params={
            "since": "2024-01-01T00:00:00+00:00",
            "until": "2024-01-01T02:00:00+00:00",
        },
    )


def test_on_call_emails_skips_users_without_email():
    client = MagicMock()
    client.rget.return_value = [{"id": "PU1"}, {"id": "PU2", "email": "john@example.com"}]
    roster = PagerDutyRoster("token", client=client)

    assert roster.on_call_emails("PSCHED1", CURRENT_ONCALL_HORIZON) == ["john@example.com"]


def test_on_call_emails_wraps_api_errors():
    client = MagicMock()
    client.rget.side_effect = pagerduty.Error("boom")
    roster = PagerDutyRoster("token", client=client)

    with pytest.raises(RosterQueryError) as e:
        roster.on_call_emails("PSCHED1", CURRENT_ONCALL_HORIZON)

    assert "PSCHED1" in str(e.value)


def test_emails_for_unit_deduplicates_across_schedules():
    roster = MagicMock()
    roster.on_call_emails.side_effect = [
        ["jane@example.com"],
        ["jane@example.com", "john@example.com"],
    ]

    emails = emails_for_unit(roster, make_unit("1", "2"), CURRENT_ONCALL_HORIZON)

    assert emails == ["jane@example.com", "john@example.com"]
    roster.on_call_emails.assert_has_calls(
        [call("1", CURRENT_ONCALL_HORIZON), call("2", CURRENT_ONCALL_HORIZON)]
    )


def test_emails_for_unit_same_email_twice_yields_one():
    roster = MagicMock()
    roster.on_call_emails.side_effect = [["jane@example.com"], ["jane@example.com"]]

    emails = emails_for_unit(roster, make_unit("1", "2"), timedelta(days=1))

    assert emails == ["jane@example.com"]


def test_emails_for_unit_aborts_on_first_failure():
    roster = MagicMock()
    roster.on_call_emails.side_effect = RosterQueryError("schedule 1 unavailable")

    with pytest.raises(RosterQueryError):
        emails_for_unit(roster, make_unit("1", "2"), CURRENT_ONCALL_HORIZON)

    roster.on_call_emails.assert_called_once_with("1", CURRENT_ONCALL_HORIZON)
