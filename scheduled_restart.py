import argparse
import asyncio
import logging
import logging.handlers
import os
import sys
import time
from datetime import tzinfo
from typing import List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from restart_router import ResetOutcome, ResetReport, RouterConfig, reset_router

# Environment variables win over .env entries
load_dotenv()

# --- Configuration ---
DEFAULT_ROUTER_URL = "http://192.168.1.1"
DEFAULT_ROUTER_USERNAME = "admin"
SCREENSHOT_DIR = os.getenv("SCREENSHOT_DIR", ".") # Where checkpoint screenshots land
LOG_FILE = os.getenv("LOG_FILE", os.path.join("logs", "router-reset.log")) # Empty disables file logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 10
LOCK_FILE = os.getenv("LOCK_FILE", "/tmp/router_reset.lock") # Lock file for overlapping runs
LOCK_FILE_MAX_AGE_MIN = 60 # Max age for stale lock file
SCHEDULE_CRON = "0 6 * * *" # Daily at 06:00
SCHEDULE_TIMEZONE = os.getenv("TZ", "") # Empty -> host local zone
MISFIRE_GRACE_SEC = 3600


class ConfigError(ValueError):
    pass


def load_router_config(environ: Optional[Mapping[str, str]] = None) -> RouterConfig:
    """Build the router config from the environment. ROUTER_PASSWORD is mandatory."""
    if environ is None:
        environ = os.environ

    password = environ.get("ROUTER_PASSWORD")
    if not password:
        raise ConfigError("ROUTER_PASSWORD environment variable is required")

    return RouterConfig(
        url=environ.get("ROUTER_URL") or DEFAULT_ROUTER_URL,
        username=environ.get("ROUTER_USERNAME") or DEFAULT_ROUTER_USERNAME,
        password=password,
    )


def load_schedule_timezone(value: Optional[str] = None) -> Optional[tzinfo]:
    """
    Resolve TZ for the daily trigger. None means the host local zone.

    Accepts IANA keys ("Asia/Kolkata") and zoneinfo file paths, optionally
    with the libc ":" prefix (":/etc/localtime"). POSIX rule strings such as
    "IST-5:30" cannot drive a cron trigger and raise ConfigError.
    """
    if value is None:
        value = SCHEDULE_TIMEZONE
    if not value:
        return None

    name = value[1:] if value.startswith(":") else value
    try:
        if os.path.isabs(name):
            with open(name, "rb") as f:
                return ZoneInfo.from_file(f, key=name)
        return ZoneInfo(name)
    except (OSError, ValueError, ZoneInfoNotFoundError) as e:
        raise ConfigError(f"TZ={value!r} is neither an IANA time zone nor a zoneinfo file ({e})") from e


# --- Logging Setup ---
def setup_logging(level: str, log_file: str) -> None:
    """Timestamped lines to stdout and, unless disabled, to a rotating log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S')

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# --- Lock File Handling (Overlap) ---
def check_overlap_lock() -> bool:
    """Returns True if another reset is in flight and this one must be skipped."""
    if not os.path.exists(LOCK_FILE):
        return False

    try:
        lock_file_age_sec = time.time() - os.path.getmtime(LOCK_FILE)
        if lock_file_age_sec > LOCK_FILE_MAX_AGE_MIN * 60:
            logging.warning(f"Stale router reset lock found (older than {LOCK_FILE_MAX_AGE_MIN} min), removing: {LOCK_FILE}")
            os.remove(LOCK_FILE)
            return False
        with open(LOCK_FILE) as f:
            holder = f.read().strip() or "unknown run"
        logging.info(f"Router reset already in flight ({holder}, {int(lock_file_age_sec)}s old). Skipping run.")
        return True
    except OSError as e:
        logging.error(f"Error checking/removing router reset lock {LOCK_FILE}: {e}")
        return True

def create_overlap_lock(trigger: str, router_url: str):
    """Record who holds the lock as '<pid> <trigger> <router url>'."""
    try:
        with open(LOCK_FILE, 'w') as f:
            f.write(f"{os.getpid()} {trigger} {router_url}\n")
        logging.info(f"Lock taken for {trigger} reset of {router_url}: {LOCK_FILE}")
    except OSError as e:
        logging.error(f"Failed to take router reset lock {LOCK_FILE}: {e}")

def remove_overlap_lock(trigger: str):
    try:
        if os.path.exists(LOCK_FILE):
            os.remove(LOCK_FILE)
            logging.info(f"Lock released after {trigger} reset: {LOCK_FILE}")
    except OSError as e:
        logging.error(f"Failed to release router reset lock {LOCK_FILE}: {e}")


# --- Runs ---
async def run_guarded_reset(config: RouterConfig, trigger: str = "manual") -> ResetReport:
    """One reset run under the overlap lock. Never raises."""
    if check_overlap_lock():
        return ResetReport(outcome=ResetOutcome.SKIPPED)

    create_overlap_lock(trigger, config.url)
    try:
        report = await reset_router(config, SCREENSHOT_DIR)
    except Exception as e:
        logging.exception(f"An error occurred while running the reset routine: {e}")
        report = ResetReport(outcome=ResetOutcome.FAILED)
    finally:
        remove_overlap_lock(trigger)

    logging.info(f"Router reset finished: {report.outcome.value} "
                 f"(reboot confirmed: {'yes' if report.reboot_confirmed else 'no'})")
    return report

async def scheduled_reset(config: RouterConfig) -> None:
    logging.info("Running scheduled router reset...")
    await run_guarded_reset(config, trigger="scheduled")


# --- Scheduler ---
def build_scheduler(config: RouterConfig, timezone: Optional[tzinfo] = None) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scheduled_reset,
        CronTrigger.from_crontab(SCHEDULE_CRON, timezone=timezone),
        args=[config],
        id="router-reset",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=MISFIRE_GRACE_SEC)
    return scheduler

async def run_scheduler(config: RouterConfig, timezone: Optional[tzinfo] = None) -> None:
    scheduler = build_scheduler(config, timezone)
    scheduler.start()
    logging.info("Router reset scheduler started. Will run daily at 6 AM.")
    logging.info("To test immediately, run: python scheduled_restart.py --test")
    try:
        await asyncio.Event().wait() # Until the process is killed
    finally:
        scheduler.shutdown(wait=False)


# --- Main Execution ---
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reboot the router through its web UI every day at 06:00.")
    parser.add_argument(
        "--test",
        action="store_true",
        help="run the reset once, immediately, instead of installing the schedule")
    return parser.parse_args(argv)

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(LOG_LEVEL, LOG_FILE)

    try:
        config = load_router_config()
        timezone = None if args.test else load_schedule_timezone()
    except ConfigError as e:
        logging.error(f"Error: {e}")
        return 1

    if args.test:
        logging.info("Running in test mode - executing reset immediately")
        asyncio.run(run_guarded_reset(config))
        return 0

    try:
        asyncio.run(run_scheduler(config, timezone))
    except KeyboardInterrupt:
        logging.info("Scheduler stopped.")
    return 0

def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
