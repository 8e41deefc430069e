#!/usr/bin/env python3
"""
Update-on-Idle Runner
Checks for a newer application package, waits for the user to go idle,
then installs it with rollback on failure. Meant to be run periodically
by an external scheduler (Jamf policy, launchd, cron) as root.

Exit codes:
    0 - up to date, deferred (user never went idle), updated, or another run active
    1 - download, manifest, configuration or install failure

Environment Variables:
    UPDATER_CONFIG      - Path to update.yaml (default: update.yaml next to this script)
    UPDATER_LOG_DIR     - Log directory (default: ./logs)
    UPDATER_LOG_LEVEL   - Logging level (default: INFO)
    UPDATER_LOG_SIZE    - Max log file size in MB (default: 10)
    UPDATER_LOG_COUNT   - Number of backup log files (default: 5)
    UPDATER_PID_FILE    - Run lock file (default: update_on_idle.pid next to this script)
"""
import logging
from logging.handlers import RotatingFileHandler
import os
import sys
import time
import yaml
from pathlib import Path

# Import shared functionality
from update_core import (
    BASE_DIR, CONFIG_FILE, THRESHOLD_MET, UpdateError, InstallError,
    load_config, working_directory, download_package, expand_package,
    read_package_version, read_installed_version, is_update_needed,
    read_idle_seconds, wait_for_idle, quit_app, relaunch_app,
    backup_app, install_package, restore_backup, discard_backup,
    acquire_run_lock, release_run_lock,
)

# Environment variable configuration with defaults
LOGS_DIR = Path(os.environ.get("UPDATER_LOG_DIR", BASE_DIR / "logs"))
LOG_FILE = LOGS_DIR / "update.log"
LOG_LEVEL = os.environ.get("UPDATER_LOG_LEVEL", "INFO").upper()
LOG_MAX_SIZE_MB = int(os.environ.get("UPDATER_LOG_SIZE", "10"))
LOG_BACKUP_COUNT = int(os.environ.get("UPDATER_LOG_COUNT", "5"))

# Run outcomes (all exit 0)
UP_TO_DATE = "up_to_date"
DEFERRED = "deferred"
UPDATED = "updated"
LOCKED = "locked"

logger = logging.getLogger(__name__)


# Configure logging with rotation
def setup_logging():
    """Configure logging with rotating file handler."""
    log_formatter = logging.Formatter(
        '%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    root_logger.addHandler(console_handler)

    return logging.getLogger(__name__)


def check_versions(config, workdir):
    """
    Download and expand the package, then read both versions.

    Returns:
        tuple: (package path, available version, installed version)
    """
    package = download_package(
        config["package_url"],
        workdir / config["package_name"],
        retries=config["download"]["retries"],
        timeout=config["download"]["timeout"],
    )
    expanded = expand_package(package, workdir / "expanded")
    latest = read_package_version(expanded / config["manifest_file"], config["version_pattern"])
    logger.info(f"Latest {config['app_name']} package version: {latest}")

    installed = read_installed_version(config["app_path"], config["version_key"])
    logger.info(f"Installed {config['app_name']} version: {installed}")
    return (package, latest, installed)


def install_with_rollback(config, package, workdir):
    """
    Quit the app, back it up, install, and restore the backup on failure.

    The app is relaunched whenever an installation (new or restored) is in
    place, whether or not it was running before.

    Raises:
        InstallError: If the installer failed
    """
    app_name = config["app_name"]
    app_path = Path(config["app_path"])

    was_running = quit_app(app_name, timeout=config["quit_timeout"])
    backup = backup_app(app_path, workdir / app_path.name)

    if install_package(package, config["install_target"]):
        discard_backup(backup)
        relaunch_app(app_name, config["console_path"])
        return was_running

    logger.error(f"{app_name} installation failed. Restoring from backup...")
    restored = restore_backup(backup, app_path)
    if restored:
        relaunch_app(app_name, config["console_path"])
        raise InstallError(f"{app_name} installation failed; previous version restored", restored=True)
    raise InstallError(f"{app_name} installation failed and no backup was available", restored=False)


def run_update(config, sleep=time.sleep, sample_idle=read_idle_seconds):
    """
    Perform one update run.

    Args:
        config: Validated configuration dictionary
        sleep: Sleep function used between idle checks
        sample_idle: Idle-time source

    Returns:
        str: UP_TO_DATE, DEFERRED or UPDATED

    Raises:
        UpdateError: On any failure that should exit non-zero
    """
    app_name = config["app_name"]
    idle = config["idle"]

    with working_directory(config["work_root"]) as workdir:
        package, latest, installed = check_versions(config, workdir)

        if not is_update_needed(installed, latest):
            logger.info("Installed version is up-to-date or newer; exiting")
            return UP_TO_DATE

        logger.info(f"Update required: {installed} -> {latest}")

        state = wait_for_idle(
            sample_idle,
            threshold=idle["threshold_seconds"],
            interval=idle["interval_seconds"],
            max_checks=idle["max_checks"],
            sleep=sleep,
        )
        if state != THRESHOLD_MET:
            logger.info("User did not go idle within the polling window; deferring update")
            return DEFERRED

        was_running = install_with_rollback(config, package, workdir)
        if was_running:
            logger.info(f"{app_name} was running before the update")
        logger.info(f"{app_name} has been updated to {latest}")
        return UPDATED


def run_locked(config, sleep=time.sleep):
    """Run an update while holding the run lock."""
    if not acquire_run_lock():
        return LOCKED
    try:
        return run_update(config, sleep=sleep)
    finally:
        release_run_lock()


def main(config_path=None):
    """Run once and return the process exit code."""
    logger.info("=" * 60)
    logger.info("Starting update-on-idle run")
    logger.info("=" * 60)
    logger.info(f"Configuration: {config_path or CONFIG_FILE}")

    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        outcome = run_locked(config)
        logger.info(f"Run finished: {outcome}")
        return 0
    except UpdateError as e:
        logger.error(f"Update failed: {e}")
        return 1
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1


def cli():
    """Console script entry point."""
    setup_logging()
    sys.exit(main(sys.argv[1] if len(sys.argv) > 1 else None))


if __name__ == "__main__":
    cli()
