import os
import sys
import signal
import logging
import argparse
import threading

# Third-party libraries
# pip install python-pagerduty slack_sdk pyyaml schedule
import schedule

from schedule_sync import run_sync
from sync_config import Config, ConfigError

logger = logging.getLogger(__name__)


def setup_logging():
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )


def safe_run(job):
    def wrapper(*args, **kwargs):
        try:
            job(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error running job `{job.__name__}`: {e}")

    return wrapper


def run_forever(config: Config, stop: threading.Event, poll_seconds: float = 1):
    """Runs a sync now and then every ``run_interval_seconds`` until ``stop`` is set."""
    scheduler = schedule.Scheduler()
    job = safe_run(run_sync)
    scheduler.every(config.run_interval_seconds).seconds.do(job, config)

    job(config)
    while not stop.is_set():
        scheduler.run_pending()
        stop.wait(poll_seconds)
    scheduler.clear()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Sync PagerDuty on-call schedules to Slack user groups')
    parser.add_argument('--config', help='Path to a YAML config file (default: $CONFIG_PATH or config.yaml)')
    parser.add_argument('--once', action='store_true', help='Run a single sync and exit')
    parser.add_argument('--dry-run', action='store_true', help='Log changes without writing to Slack')
    args = parser.parse_args(argv)

    setup_logging()

    try:
        config = Config.load(args.config)
        config.validate_credentials()
    except ConfigError as e:
        logger.error(f"could not parse config, error: {e}")
        return 1

    if args.dry_run:
        config.dry_run = True

    logger.info(f"starting, going to sync {len(config.schedules)} schedules")

    if args.once:
        run_sync(config)
        return 0

    stop = threading.Event()

    def handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    run_forever(config, stop)
    return 0


if __name__ == "__main__":
    sys.exit(main())
