import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

# Third-party libraries
# pip install python-pagerduty
import pagerduty

from sync_config import RosterQueryError, SyncUnit

logger = logging.getLogger(__name__)

# "Right now" for the current on-call group.
CURRENT_ONCALL_HORIZON = timedelta(seconds=1)


class PagerDutyRoster:
    def __init__(self, token: str, client: Optional[pagerduty.RestApiV2Client] = None):
        self.client = client or pagerduty.RestApiV2Client(token)

    def on_call_emails(self, schedule_id: str, horizon: timedelta,
                       now: Optional[datetime] = None) -> List[str]:
        """Returns emails of users on call for a schedule between now and now + horizon."""
        since = now or datetime.now(timezone.utc)
        until = since + horizon
        try:
            users = self.client.rget(
                f"schedules/{schedule_id}/users",
                params={'since': since.isoformat(), 'until': until.isoformat()},
            )
        except pagerduty.Error as e:
            logger.error(f"PagerDuty API Error for schedule {schedule_id}: {e}")
            raise RosterQueryError(f"could not get on-call users for schedule {schedule_id}: {e}") from e

        emails = []
        for user in users:
            email = user.get('email')
            if email and email not in emails:
                emails.append(email)
        return emails


def emails_for_unit(roster: PagerDutyRoster, unit: SyncUnit, horizon: timedelta) -> List[str]:
    """Union of on-call emails across every schedule of the unit, first seen first.

    Stops at the first schedule that cannot be read.
    """
    emails: List[str] = []
    for schedule_id in unit.schedule_ids:
        for email in roster.on_call_emails(schedule_id, horizon):
            if email not in emails:
                emails.append(email)
    return emails
