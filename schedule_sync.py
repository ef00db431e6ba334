import enum
import logging
from typing import List, Optional
from dataclasses import dataclass, field

from pagerduty_roster import CURRENT_ONCALL_HORIZON, PagerDutyRoster, emails_for_unit
from slack_directory import SlackDirectory
from sync_config import Config

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    handle: str
    outcome: Outcome
    reason: Optional[str] = None
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


def reconcile(directory: SlackDirectory, handle: str, desired_ids: List[str],
              dry_run: bool = False) -> ReconcileResult:
    """Makes the user group named ``handle`` contain exactly ``desired_ids``.

    The group is created when missing. Membership is replaced in full, and only
    when it differs from the live member list.
    """
    try:
        group = directory.find_group_by_handle(handle)
        if group is None and dry_run:
            logger.info(f"  [DRY RUN] Would create user group {handle}")
            current = set()
        else:
            if group is None:
                group = directory.create_group(handle)
            current = directory.get_group_members(group['id'])

        desired = set(desired_ids)
        if desired == current:
            logger.info(f"Slack group {handle} is up to date")
            return ReconcileResult(handle, Outcome.UNCHANGED)

        added = sorted(desired - current)
        removed = sorted(current - desired)
        if dry_run:
            logger.info(f"  [DRY RUN] Would set {handle} to {sorted(desired)} (+{added} -{removed})")
        else:
            logger.info(f"Slack group {handle} needs updating...")
            directory.replace_group_members(group['id'], list(desired_ids))
            logger.info(f"Slack group {handle} updated (+{len(added)} -{len(removed)})")
        return ReconcileResult(handle, Outcome.UPDATED, added=added, removed=removed)
    except Exception as e:
        return ReconcileResult(handle, Outcome.FAILED, reason=str(e))


def sync_schedules(config: Config, directory: SlackDirectory,
                   roster: PagerDutyRoster) -> List[ReconcileResult]:
    """Runs one pass over every sync unit against pre-populated directory caches."""
    results = []

    def sync_group(unit, handle, horizon):
        logger.info(f"Checking slack group: {handle}")
        try:
            emails = emails_for_unit(roster, unit, horizon)
        except Exception as e:
            logger.error(f"Failed to get emails for {handle}: {e}")
            return ReconcileResult(handle, Outcome.FAILED, reason=str(e))

        try:
            user_ids = directory.identities_for_emails(emails)
        except Exception as e:
            logger.error(f"Failed to update slack group {handle}: {e}")
            return ReconcileResult(handle, Outcome.FAILED, reason=str(e))

        result = reconcile(directory, handle, user_ids, dry_run=config.dry_run)
        if result.outcome is Outcome.FAILED:
            logger.error(f"Failed to update slack group {handle}: {result.reason}")
        return result

    for unit in config.schedules:
        if unit.sync_current_oncall_group:
            results.append(sync_group(
                unit, unit.current_oncall_group_handle, CURRENT_ONCALL_HORIZON))

        if unit.sync_all_oncall_group:
            results.append(sync_group(
                unit, unit.all_oncall_group_handle, config.pagerduty_schedule_lookahead))

    if config.notify_channel_id and not config.dry_run:
        changed = [r for r in results if r.outcome is not Outcome.UNCHANGED]
        if changed:
            directory.post_report(config.notify_channel_id, changed)

    return results


def run_sync(config: Config, directory: Optional[SlackDirectory] = None,
             roster: Optional[PagerDutyRoster] = None) -> List[ReconcileResult]:
    logger.info(f"--- Running schedule sync (Dry Run: {config.dry_run}) ---")
    directory = directory or SlackDirectory(config.slack_token)
    roster = roster or PagerDutyRoster(config.pagerduty_token)

    # Snapshots are taken once per pass.
    try:
        directory.populate_group_cache()
        directory.populate_user_cache()
    except Exception as e:
        logger.error(f"Could not read Slack directory, skipping this run: {e}")
        return []

    results = sync_schedules(config, directory, roster)
    updated = sum(1 for r in results if r.outcome is Outcome.UPDATED)
    failed = sum(1 for r in results if r.outcome is Outcome.FAILED)
    logger.info(f"--- Sync Complete: {len(results)} groups checked, {updated} updated, {failed} failed ---")
    return results
