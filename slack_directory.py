import logging
from typing import Dict, Iterable, List, Optional, Set

# Third-party libraries
# pip install slack_sdk
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from sync_config import DirectoryAPIError, IdentityResolutionError

logger = logging.getLogger(__name__)


def _slack_error(e: SlackApiError) -> str:
    response = getattr(e, 'response', None)
    if response is not None:
        try:
            return response['error']
        except (KeyError, TypeError):
            pass
    return str(e)


class SlackDirectory:
    def __init__(self, token: str, client: Optional[WebClient] = None):
        self.client = client or WebClient(token=token)
        # Cache: { lower-cased email: user id }
        self.user_cache: Dict[str, str] = {}
        # Cache: { lower-cased handle: usergroup }
        self.group_cache: Dict[str, dict] = {}

    def populate_user_cache(self):
        """Fetches all users once per pass to resolve emails to user IDs."""
        logger.info("Populating Slack user cache...")
        self.user_cache = {}
        cursor = None
        try:
            while True:
                response = self.client.users_list(cursor=cursor, limit=200)
                for member in response['members']:
                    if member.get('deleted'):
                        continue
                    email = member.get('profile', {}).get('email', '')
                    if email:
                        self.user_cache[email.lower()] = member['id']

                cursor = response.get('response_metadata', {}).get('next_cursor')
                if not cursor:
                    break
        except SlackApiError as e:
            logger.error(f"Slack User List Error: {_slack_error(e)}")
            raise DirectoryAPIError(f"could not list slack users: {_slack_error(e)}") from e

    def populate_group_cache(self):
        logger.info("Populating Slack user group cache...")
        try:
            response = self.client.usergroups_list()
        except SlackApiError as e:
            logger.error(f"Slack User Group List Error: {_slack_error(e)}")
            raise DirectoryAPIError(f"could not list slack user groups: {_slack_error(e)}") from e
        self.group_cache = {
            group['handle'].lower(): group for group in response.get('usergroups', [])
        }

    def identities_for_emails(self, emails: Iterable[str]) -> List[str]:
        """Maps every email to a Slack user ID, or fails on the first unknown one."""
        user_ids = []
        for email in emails:
            user_id = self.user_cache.get(email.lower())
            if user_id is None:
                raise IdentityResolutionError(f"could not find slack user with email: {email}")
            if user_id not in user_ids:
                user_ids.append(user_id)
        return user_ids

    def find_group_by_handle(self, handle: str) -> Optional[dict]:
        return self.group_cache.get(handle.lower())

    def create_group(self, handle: str) -> dict:
        logger.info(f"  [+] Creating Slack user group {handle}")
        try:
            response = self.client.usergroups_create(name=handle, handle=handle)
        except SlackApiError as e:
            logger.error(f"  [X] Failed to create user group {handle}: {_slack_error(e)}")
            raise DirectoryAPIError(f"could not create user group {handle}: {_slack_error(e)}") from e
        group = response['usergroup']
        self.group_cache[handle.lower()] = group
        return group

    def get_group_members(self, group_id: str) -> Set[str]:
        """Returns the user IDs currently in the user group (live, not cached)."""
        try:
            response = self.client.usergroups_users_list(usergroup=group_id)
        except SlackApiError as e:
            logger.error(f"Slack User Group Member Error ({group_id}): {_slack_error(e)}")
            raise DirectoryAPIError(f"could not list members of {group_id}: {_slack_error(e)}") from e
        return set(response.get('users', []))

    def replace_group_members(self, group_id: str, user_ids: List[str]):
        try:
            self.client.usergroups_users_update(usergroup=group_id, users=','.join(user_ids))
        except SlackApiError as e:
            logger.error(f"  [X] Failed to update members of {group_id}: {_slack_error(e)}")
            raise DirectoryAPIError(f"could not update members of {group_id}: {_slack_error(e)}") from e

    def post_report(self, channel_id: str, results: list):
        """Posts a summary block to the notification channel."""
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "On-call Group Sync Report"}
            }
        ]

        for result in results:
            text = f"*{result.handle}*: {result.outcome.value}"
            if result.added or result.removed:
                text += f"\n+{len(result.added)} / -{len(result.removed)} members"
            if result.reason:
                text += f"\nError: {result.reason}"
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": text}
            })

        try:
            self.client.chat_postMessage(
                channel=channel_id, blocks=blocks, text="On-call group sync report")
        except Exception as e:
            logger.error(f"Failed to post report: {e}")
