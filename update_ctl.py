#!/usr/bin/env python3
"""
Update Control Script (update_ctl.py)

Utility to inspect the host and drive the updater by hand.

Usage:
    python update_ctl.py status     # Installed version, app state, idle time
    python update_ctl.py check      # Download the package and compare versions
    python update_ctl.py idle       # Print current idle time
    python update_ctl.py run        # Perform one update run
    python update_ctl.py watch      # Run updates on the configured schedule
    python update_ctl.py validate   # Validate update.yaml
"""
import logging
import sys
import time

import schedule
import yaml

# Import shared functionality
from update_core import (
    CONFIG_FILE, MISSING_VERSION, UpdateError,
    load_config, read_installed_version, is_app_running, get_console_user,
    read_idle_seconds, get_pid, is_run_locked, working_directory, is_update_needed,
)
from update_on_idle import check_versions, main as run_once, setup_logging
from validate_config import validate_and_print

logger = logging.getLogger(__name__)


def status():
    """Show installed version, whether the app runs, and idle time."""
    config = load_config()
    app_name = config["app_name"]

    installed = read_installed_version(config["app_path"], config["version_key"])
    if installed == MISSING_VERSION:
        print(f"[MISSING] {app_name} is not installed at {config['app_path']}")
    else:
        print(f"[INSTALLED] {app_name} {installed}")

    print(f"  Running:  {'yes' if is_app_running(app_name) else 'no'}")
    try:
        user, uid = get_console_user(config["console_path"])
        print(f"  Console:  {user} (uid {uid})")
    except OSError as e:
        print(f"  Console:  unknown ({e})")

    idle_seconds = read_idle_seconds()
    print(f"  Idle:     {'unknown' if idle_seconds is None else f'{idle_seconds}s'}")

    if is_run_locked():
        print(f"  Update run in progress (PID: {get_pid()})")
    return 0


def check():
    """Download the package and report whether an update is needed."""
    config = load_config()
    with working_directory(config["work_root"]) as workdir:
        _, latest, installed = check_versions(config, workdir)

    if is_update_needed(installed, latest):
        print(f"[UPDATE] {installed} -> {latest}")
    else:
        print(f"[OK] {installed} is up to date (available: {latest})")
    return 0


def idle():
    """Print the current idle time."""
    idle_seconds = read_idle_seconds()
    if idle_seconds is None:
        print("[ERROR] Could not read idle time")
        return 1
    print(f"Idle time: {idle_seconds}s")
    return 0


def run():
    """Perform one update run."""
    return run_once()


def schedule_update(sched_config):
    """Register the update run with the schedule library."""
    unit = sched_config["unit"]
    every_val = sched_config.get("every", 1)
    at = sched_config.get("at")
    day = sched_config.get("day")

    sched = getattr(schedule.every(every_val), unit)
    if unit == "weeks" and day:
        sched = getattr(sched, day.lower())
    if at:
        sched = sched.at(at)
    logger.info(f"Scheduled update: every {every_val} {unit}"
                + (f" on {day}" if day else "") + (f" at {at}" if at else ""))

    return sched.do(run_once)


def watch():
    """Run the updater on the configured schedule until interrupted."""
    config = load_config()
    sched_config = config.get("schedule")
    if not sched_config:
        print(f"[ERROR] No schedule configured in {CONFIG_FILE}")
        return 1

    schedule_update(sched_config)
    logger.info("Press Ctrl+C to stop watching")
    try:
        while True:
            schedule.run_pending()
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Watch stopped by user")
    finally:
        schedule.clear()
    return 0


def validate():
    """Validate the configuration file."""
    return 0 if validate_and_print(CONFIG_FILE) else 1


def usage():
    """Print usage information."""
    print(__doc__)
    print("Commands:")
    print("  status    - Show installed version, app state and idle time")
    print("  check     - Download the package and compare versions")
    print("  idle      - Print the current idle time")
    print("  run       - Perform one update run")
    print("  watch     - Run updates on the configured schedule")
    print("  validate  - Validate the configuration file")
    print()


COMMANDS = {
    'status': status,
    'check': check,
    'idle': idle,
    'run': run,
    'watch': watch,
    'validate': validate,
}


def main(argv=None):
    """Dispatch a command and return the exit code."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        usage()
        return 1

    command = argv[0].lower()

    if command in COMMANDS:
        try:
            return COMMANDS[command]()
        except UpdateError as e:
            print(f"[ERROR] {e}")
            return 1
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            print(f"[ERROR] {e}")
            return 1
        except schedule.ScheduleError as e:
            print(f"[ERROR] Invalid schedule: {e}")
            return 1
    elif command in ('-h', '--help', 'help'):
        usage()
        return 0
    else:
        print(f"Unknown command: {command}")
        usage()
        return 1


def cli():
    """Console script entry point."""
    setup_logging()
    sys.exit(main())


if __name__ == "__main__":
    cli()
