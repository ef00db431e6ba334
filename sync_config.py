import os
import re
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from dataclasses import dataclass, field

import yaml

logger = logging.getLogger(__name__)

SCHEDULE_KEY_PREFIX = 'SCHEDULE_'
DEFAULT_CONFIG_PATH = 'config.yaml'
RUN_INTERVAL_DEFAULT = 60
LOOKAHEAD_DEFAULT = timedelta(hours=24 * 100)
ALL_ONCALL_PREFIX_DEFAULT = 'all-oncall-'
CURRENT_ONCALL_PREFIX_DEFAULT = 'current-oncall-'

# --- ERRORS ---

class ConfigError(Exception):
    """Malformed or missing configuration. Fatal at startup."""


class SyncError(Exception):
    """Failure scoped to a single sync unit and mode."""


class RosterQueryError(SyncError):
    pass


class IdentityResolutionError(SyncError):
    pass


class DirectoryAPIError(SyncError):
    pass

# --- MODEL ---

@dataclass(frozen=True)
class ScheduleDeclaration:
    schedule_id: str
    team_name: str


@dataclass(frozen=True)
class SyncUnit:
    """One or more PagerDuty schedules feeding one pair of Slack user groups."""
    schedule_ids: Tuple[str, ...]
    all_oncall_group_handle: str
    current_oncall_group_handle: str
    sync_all_oncall_group: bool = False
    sync_current_oncall_group: bool = True


def parse_declaration(raw: str) -> ScheduleDeclaration:
    """Parses an ``id,team`` schedule value."""
    values = raw.split(',')
    if len(values) != 2:
        raise ConfigError(
            f"expecting schedule value to be a comma separated scheduleId,name but got {raw}"
        )
    return ScheduleDeclaration(schedule_id=values[0], team_name=values[1])


def build_sync_units(declarations: Sequence[ScheduleDeclaration],
                     current_prefix: str = CURRENT_ONCALL_PREFIX_DEFAULT,
                     all_prefix: str = ALL_ONCALL_PREFIX_DEFAULT,
                     sync_current: bool = True,
                     sync_all: bool = False) -> List[SyncUnit]:
    """Merges declarations sharing a team name into a single sync unit.

    Units keep the position of the first declaration that created them and
    schedule IDs keep the order they were first seen in.
    """
    if not declarations:
        raise ConfigError(
            f"expecting at least one schedule defined as an env var using prefix {SCHEDULE_KEY_PREFIX}"
        )

    index_by_handle: Dict[str, int] = {}
    schedule_ids: List[List[str]] = []
    handles: List[Tuple[str, str]] = []

    for declaration in declarations:
        current_handle = f"{current_prefix}{declaration.team_name}"
        all_handle = f"{all_prefix}{declaration.team_name}s"

        position = index_by_handle.get(current_handle)
        if position is None:
            index_by_handle[current_handle] = len(handles)
            handles.append((current_handle, all_handle))
            schedule_ids.append([declaration.schedule_id])
        elif declaration.schedule_id not in schedule_ids[position]:
            schedule_ids[position].append(declaration.schedule_id)

    return [
        SyncUnit(
            schedule_ids=tuple(ids),
            all_oncall_group_handle=all_handle,
            current_oncall_group_handle=current_handle,
            sync_all_oncall_group=sync_all,
            sync_current_oncall_group=sync_current,
        )
        for (current_handle, all_handle), ids in zip(handles, schedule_ids)
    ]

# --- PARSERS ---

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'μs': 1e-6,
    'ms': 1e-3,
    's': 1,
    'm': 60,
    'h': 3600,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)')

_TRUE_VALUES = {'1', 't', 'T', 'TRUE', 'true', 'True'}
_FALSE_VALUES = {'0', 'f', 'F', 'FALSE', 'false', 'False'}


def parse_duration(value: str) -> timedelta:
    """Parses a duration such as ``2400h`` or ``1h30m`` (Go duration syntax)."""
    text = value.strip()
    sign = 1
    if text[:1] in ('-', '+'):
        sign = -1 if text[0] == '-' else 1
        text = text[1:]

    if text == '0':
        return timedelta(0)
    if not text:
        raise ConfigError(f"failed to parse {value!r} as a duration")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ConfigError(f"failed to parse {value!r} as a duration")
        total += _DURATION_UNITS[match.group(2)] * float(match.group(1))
        pos = match.end()
    return timedelta(seconds=total * sign)


def parse_bool(value: str) -> bool:
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean {value!r}")

# --- CONFIGURATION ---

@dataclass
class Config:
    pagerduty_token: str = ''
    slack_token: str = ''
    run_interval_seconds: int = RUN_INTERVAL_DEFAULT
    pagerduty_schedule_lookahead: timedelta = LOOKAHEAD_DEFAULT
    all_oncall_group_name_prefix: str = ALL_ONCALL_PREFIX_DEFAULT
    current_oncall_group_name_prefix: str = CURRENT_ONCALL_PREFIX_DEFAULT
    sync_all_oncall_group: bool = False
    sync_current_oncall_group: bool = True
    dry_run: bool = False
    notify_channel_id: Optional[str] = None
    schedules: List[SyncUnit] = field(default_factory=list)

    @classmethod
    def load(cls, config_path: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """Builds the configuration from an optional YAML file and the environment.

        Environment variables override values from the file. Schedule
        declarations are the file's ``schedules`` entries followed by every
        ``SCHEDULE_*`` variable in environment order.
        """
        env = os.environ if environ is None else environ
        path = config_path or env.get('CONFIG_PATH')
        settings, raw_schedules = _read_config_file(path or DEFAULT_CONFIG_PATH, required=bool(path))

        config = cls()
        config.pagerduty_token = env.get('PAGERDUTY_TOKEN', settings.get('pagerduty_token', ''))
        config.slack_token = env.get('SLACK_TOKEN', settings.get('slack_token', ''))
        config.notify_channel_id = env.get('NOTIFY_CHANNEL_ID', settings.get('notify_channel_id')) or None
        config.all_oncall_group_name_prefix = env.get(
            'ALL_ONCALL_GROUP_NAME_PREFIX',
            settings.get('all_oncall_group_name_prefix', ALL_ONCALL_PREFIX_DEFAULT),
        )
        config.current_oncall_group_name_prefix = env.get(
            'CURRENT_ONCALL_GROUP_NAME_PREFIX',
            settings.get('current_oncall_group_name_prefix', CURRENT_ONCALL_PREFIX_DEFAULT),
        )

        config.run_interval_seconds = _int_setting(
            env, settings, 'RUN_INTERVAL_SECONDS', RUN_INTERVAL_DEFAULT)
        config.sync_all_oncall_group = _bool_setting(
            env, settings, 'SYNC_ALL_ONCALL_GROUP', False)
        config.sync_current_oncall_group = _bool_setting(
            env, settings, 'SYNC_CURRENT_ONCALL_GROUP', True)
        config.dry_run = _bool_setting(env, settings, 'DRY_RUN', False)

        lookahead = env.get('PAGERDUTY_SCHEDULE_LOOKAHEAD',
                            settings.get('pagerduty_schedule_lookahead'))
        if lookahead is not None:
            config.pagerduty_schedule_lookahead = parse_duration(str(lookahead))

        raw_schedules = list(raw_schedules) + [
            value for key, value in env.items() if key.startswith(SCHEDULE_KEY_PREFIX)
        ]
        declarations = [parse_declaration(raw) for raw in raw_schedules]
        config.schedules = build_sync_units(
            declarations,
            current_prefix=config.current_oncall_group_name_prefix,
            all_prefix=config.all_oncall_group_name_prefix,
            sync_current=config.sync_current_oncall_group,
            sync_all=config.sync_all_oncall_group,
        )
        return config

    def validate_credentials(self):
        missing = [name for name, value in (
            ('PAGERDUTY_TOKEN', self.pagerduty_token),
            ('SLACK_TOKEN', self.slack_token),
        ) if not value]
        if missing:
            raise ConfigError(f"Missing credentials environment variables: {', '.join(missing)}")


def _read_config_file(path: str, required: bool = False) -> Tuple[dict, Iterable[str]]:
    if not os.path.exists(path):
        if required:
            raise ConfigError(f"config file {path} does not exist")
        return {}, []

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"expecting a mapping at the top level of {path}")

    settings = data.get('settings') or {}
    schedules = data.get('schedules') or []
    if not isinstance(settings, dict) or not isinstance(schedules, list):
        raise ConfigError(f"malformed settings or schedules section in {path}")
    logger.info(f"Loaded config file {path} ({len(schedules)} schedules)")
    return settings, [str(s) for s in schedules]


def _int_setting(env: Mapping[str, str], settings: dict, key: str, default: int) -> int:
    value = env.get(key, settings.get(key.lower()))
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid {key}={value!r}, using default {default}")
        return default


def _bool_setting(env: Mapping[str, str], settings: dict, key: str, default: bool) -> bool:
    value = env.get(key, settings.get(key.lower()))
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    try:
        return parse_bool(str(value))
    except ValueError:
        logger.warning(f"Ignoring invalid {key}={value!r}, using default {default}")
        return default
