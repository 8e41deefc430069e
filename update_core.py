"""
Update Core Module (update_core.py)

Shared functionality for the update runner, control script, and tests.
This module provides reusable functions without running an update itself.
"""
import fcntl
import logging
import os
import plistlib
import pwd
import re
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path

import psutil
import requests
from packaging.version import InvalidVersion, Version

from validate_config import validate_config

logger = logging.getLogger(__name__)

# Directory paths
BASE_DIR = Path(__file__).parent
CONFIG_FILE = os.environ.get("UPDATER_CONFIG", BASE_DIR / "update.yaml")
PID_FILE = Path(os.environ.get("UPDATER_PID_FILE", BASE_DIR / "update_on_idle.pid"))
COMMAND_TIMEOUT = int(os.environ.get("UPDATER_COMMAND_TIMEOUT", "1800"))

# Ordered before any real version; used when the app is not installed
MISSING_VERSION = "0"

# Idle gate states
POLLING = "polling"
THRESHOLD_MET = "threshold_met"
TIMED_OUT = "timed_out"

IDLE_TIME_PATTERN = re.compile(r'"HIDIdleTime"\s*=\s*(\d+)')
NANOSECONDS_PER_SECOND = 1000000000

DOWNLOAD_CHUNK_SIZE = 64 * 1024
RETRY_MAX_DELAY = 30

# Open lock-file handles of this process, keyed by path
_LOCK_HANDLES = {}


class UpdateError(Exception):
    """Base error for a run that must end with a non-zero exit code."""


class DownloadError(UpdateError):
    """The package could not be fetched within the retry budget."""


class ManifestError(UpdateError):
    """The package could not be expanded or carries no usable version."""


class InstallError(UpdateError):
    """The installer failed."""

    def __init__(self, message, restored=False):
        super().__init__(message)
        self.restored = restored


# =============================================================================
# Configuration
# =============================================================================

def load_config(config_path=None):
    """
    Load and validate the update configuration from YAML file.

    Args:
        config_path: Path to update.yaml (uses CONFIG_FILE if None)

    Returns:
        dict: Configuration with defaults filled in
    """
    if config_path is None:
        config_path = CONFIG_FILE

    return validate_config(config_path)


# =============================================================================
# Command Execution
# =============================================================================

def run_command(args, timeout=None):
    """
    Execute an external utility.

    Args:
        args: Argument list (no shell involved)
        timeout: Timeout in seconds (uses COMMAND_TIMEOUT if None)

    Returns:
        dict: Result with 'success', 'returncode', 'stdout', 'stderr', 'error' keys
    """
    if timeout is None:
        timeout = COMMAND_TIMEOUT

    result = {
        'success': False,
        'returncode': None,
        'stdout': '',
        'stderr': '',
        'error': None
    }

    try:
        proc_result = subprocess.run(
            [str(arg) for arg in args],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        result['success'] = True
        result['returncode'] = proc_result.returncode
        result['stdout'] = proc_result.stdout
        result['stderr'] = proc_result.stderr

    except subprocess.TimeoutExpired:
        result['error'] = f"Timed out after {timeout} seconds"
    except subprocess.CalledProcessError as e:
        result['error'] = f"Exit code {e.returncode}"
        result['returncode'] = e.returncode
        result['stdout'] = e.stdout or ''
        result['stderr'] = e.stderr or ''
    except FileNotFoundError:
        result['error'] = f"Command not found: {args[0]}"
    except OSError as e:
        result['error'] = str(e)

    return result


# =============================================================================
# Working Directory
# =============================================================================

@contextmanager
def working_directory(root=None, prefix="AppUpdate."):
    """
    Create a uniquely named scratch directory and always remove it on exit.

    Args:
        root: Parent directory (system temp dir if None or missing)
        prefix: Directory name prefix

    Yields:
        Path: The scratch directory
    """
    if root is not None and not Path(root).is_dir():
        logger.warning(f"Work root {root} does not exist, using system temp directory")
        root = None

    workdir = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    logger.debug(f"Created working directory {workdir}")
    try:
        yield workdir
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
        if workdir.exists():
            logger.error(f"Failed to remove working directory {workdir}")
        else:
            logger.debug(f"Removed working directory {workdir}")


# =============================================================================
# Package Download
# =============================================================================

def download_package(url, dest, retries=12, timeout=300, session=None, sleep=time.sleep):
    """
    Download the package, retrying on any failure.

    Args:
        url: Package URL (the same URL is used for every attempt)
        dest: Destination file path
        retries: Retries after the first attempt
        timeout: Per-request timeout in seconds
        session: requests.Session to use (a new one if None)
        sleep: Sleep function between attempts

    Returns:
        Path: The downloaded file

    Raises:
        DownloadError: If every attempt fails
    """
    dest = Path(dest)
    if session is None:
        session = requests.Session()
        session.headers.update({"User-Agent": "update-on-idle/1.0"})

    attempts = retries + 1
    delay = 1
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            with session.get(url, timeout=timeout, stream=True, allow_redirects=True) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            size = dest.stat().st_size
            logger.info(f"Downloaded {url} ({size} bytes)")
            return dest
        except (requests.RequestException, OSError) as e:
            last_error = e
            if attempt >= attempts:
                break
            logger.warning(f"Download failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay}s")
            sleep(delay)
            delay = min(delay * 2, RETRY_MAX_DELAY)

    raise DownloadError(f"Download failed after {attempts} attempts: {last_error}")


# =============================================================================
# Version Discovery
# =============================================================================

def expand_package(package, dest):
    """
    Expand a flat installer package into a directory tree.

    Raises:
        ManifestError: If pkgutil fails
    """
    result = run_command(["pkgutil", "--expand-full", package, dest])
    if not result['success']:
        raise ManifestError(f"Failed to expand {package}: {result['error']} {result['stderr'].strip()}")
    return Path(dest)


def read_package_version(manifest, pattern):
    """
    Extract the product version from the package manifest.

    The manifest is matched with a regular expression rather than parsed.

    Args:
        manifest: Path to the Distribution file
        pattern: Regex with one capture group for the version

    Returns:
        str: The available version

    Raises:
        ManifestError: If the manifest is missing or no version matches
    """
    manifest = Path(manifest)
    if not manifest.is_file():
        raise ManifestError(f"Distribution file missing at {manifest}")

    text = manifest.read_text(encoding="utf-8", errors="replace")
    match = re.search(pattern, text)
    if not match or not match.group(1).strip():
        raise ManifestError(f"Could not parse latest version from {manifest}")
    return match.group(1).strip()


def read_installed_version(app_path, key="CFBundleShortVersionString"):
    """
    Read the installed application version from its Info.plist.

    Args:
        app_path: Path to the application bundle
        key: Info.plist key holding the version

    Returns:
        str: Installed version, or MISSING_VERSION when not installed

    Raises:
        UpdateError: If the plist exists but has no readable version
    """
    plist_path = Path(app_path) / "Contents" / "Info.plist"
    if not plist_path.is_file():
        return MISSING_VERSION

    try:
        with open(plist_path, "rb") as f:
            info = plistlib.load(f)
    except (plistlib.InvalidFileException, ValueError, OSError) as e:
        raise UpdateError(f"Could not read {plist_path}: {e}") from e

    version = info.get(key)
    if not isinstance(version, str) or not version.strip():
        raise UpdateError(f"{plist_path} has no {key}")
    return version.strip()


def _numeric_components(version):
    components = []
    for part in version.split("."):
        match = re.match(r"\d+", part)
        components.append(int(match.group()) if match else 0)
    while len(components) > 1 and components[-1] == 0:
        components.pop()
    return tuple(components)


def compare_versions(installed, available):
    """
    Compare two dotted version strings numerically.

    Returns:
        int: -1 if installed is older, 0 if equal, 1 if installed is newer
    """
    if installed == available:
        return 0

    try:
        left, right = Version(installed), Version(available)
    except InvalidVersion:
        left, right = _numeric_components(installed), _numeric_components(available)

    if left == right:
        return 0
    return -1 if left < right else 1


def is_update_needed(installed, available):
    """Return True only when the installed version is older than the available one."""
    return compare_versions(installed, available) < 0


# =============================================================================
# Idle Time
# =============================================================================

def read_idle_seconds():
    """
    Sample the host's input idle time.

    Returns:
        int: Whole seconds since the last input event, or None if unreadable
    """
    result = run_command(["ioreg", "-c", "IOHIDSystem"], timeout=30)
    if not result['success']:
        logger.debug(f"ioreg failed: {result['error']}")
        return None

    match = IDLE_TIME_PATTERN.search(result['stdout'])
    if not match:
        return None
    return int(match.group(1)) // NANOSECONDS_PER_SECOND


def wait_for_idle(sample=read_idle_seconds, threshold=1200, interval=300, max_checks=108,
                  sleep=time.sleep):
    """
    Poll idle time until the threshold is met or the check budget runs out.

    An unreadable sample counts as zero so an active user is never
    reported idle.

    Args:
        sample: Callable returning idle seconds or None
        threshold: Idle seconds required
        interval: Seconds to sleep between checks
        max_checks: Number of checks before giving up
        sleep: Sleep function

    Returns:
        str: THRESHOLD_MET or TIMED_OUT
    """
    state = POLLING
    check = 0
    while state == POLLING:
        check += 1
        logger.info(f"Idle check #{check}")
        idle_seconds = sample()
        if idle_seconds is None:
            logger.warning("Could not read idle time; assuming 0")
            idle_seconds = 0
        logger.info(f"Idle time: {idle_seconds}s")

        if idle_seconds >= threshold:
            logger.info(f"Idle threshold reached (>={threshold}s); proceeding with update")
            state = THRESHOLD_MET
        elif check >= max_checks:
            logger.info(f"User not idle >={threshold}s within {max_checks} checks")
            state = TIMED_OUT
        else:
            sleep(interval)

    return state


# =============================================================================
# Process Control Functions
# =============================================================================

def find_app_processes(app_name):
    """Return processes whose name is exactly app_name."""
    procs = []
    for proc in psutil.process_iter(['name']):
        try:
            if proc.info['name'] == app_name:
                procs.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return procs


def is_app_running(app_name):
    """Check if the application is running."""
    return bool(find_app_processes(app_name))


def quit_app(app_name, timeout=30):
    """
    Ask the application to quit if it is running.

    Args:
        app_name: Application (and process) name
        timeout: Seconds to wait for its processes to exit

    Returns:
        bool: True if the application was running
    """
    procs = find_app_processes(app_name)
    if not procs:
        logger.info(f"{app_name} is not running")
        return False

    logger.info(f"{app_name} is currently running; asking it to quit")
    result = run_command(["osascript", "-e", f'quit app "{app_name}"'], timeout=60)
    if not result['success']:
        logger.warning(f"Quit request for {app_name} failed: {result['error']}")

    gone, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning(f"{app_name} still running after {timeout}s ({len(alive)} process(es))")
    return True


def get_console_user(console="/dev/console"):
    """
    Find the user owning the console.

    Returns:
        tuple: (username, uid)
    """
    uid = os.stat(console).st_uid
    try:
        name = pwd.getpwuid(uid).pw_name
    except KeyError:
        name = str(uid)
    return (name, uid)


def relaunch_app(app_name, console="/dev/console"):
    """
    Open the application in the console user's session.

    Returns:
        bool: True if the application was launched
    """
    try:
        user, uid = get_console_user(console)
    except OSError as e:
        logger.warning(f"Cannot determine console user: {e}; not relaunching {app_name}")
        return False

    if uid == 0:
        logger.warning(f"No user logged in at the console; not relaunching {app_name}")
        return False

    logger.info(f"Relaunching {app_name} for {user} (uid {uid})")
    result = run_command(["launchctl", "asuser", uid, "open", "-a", app_name], timeout=60)
    if not result['success']:
        logger.error(f"Failed to relaunch {app_name}: {result['error']} {result['stderr'].strip()}")
        return False
    return True


# =============================================================================
# Backup / Install / Restore
# =============================================================================

def backup_app(app_path, dest):
    """
    Copy the installed application bundle.

    Returns:
        Path: The backup, or None if no installation exists
    """
    app_path = Path(app_path)
    if not app_path.is_dir():
        logger.warning(f"App not found at expected location ({app_path}); continuing without backup")
        return None

    logger.info(f"Backing up {app_path} to {dest}")
    shutil.copytree(app_path, dest, symlinks=True)
    return Path(dest)


def install_package(package, target="/"):
    """Run the system installer. Returns True on success."""
    logger.info(f"Installing {package}...")
    result = run_command(["installer", "-pkg", package, "-target", target])
    if result['success']:
        logger.info("Installation successful")
        return True

    logger.error(f"Installation failed: {result['error']}")
    if result['stderr']:
        logger.error(f"installer stderr: {result['stderr'].strip()}")
    return False


def restore_backup(backup, app_path):
    """
    Replace whatever is installed with the backup.

    If the restore itself fails, the backup is moved out of the working
    directory so it survives cleanup and can be put back by hand.

    Returns:
        bool: True if the backup was restored

    Raises:
        InstallError: If the backup could not be moved into place
    """
    app_path = Path(app_path)
    if backup is None or not Path(backup).is_dir():
        logger.error(f"Backup not found. {app_path.name} may be left in a broken state.")
        return False

    backup = Path(backup)
    logger.warning(f"Restoring {app_path} from backup at {backup}")
    try:
        if app_path.is_symlink() or app_path.is_file():
            app_path.unlink()
        elif app_path.exists():
            shutil.rmtree(app_path)
        shutil.move(str(backup), str(app_path))
    except OSError as e:
        kept = rescue_backup(backup)
        logger.critical(f"Restore of {app_path} failed: {e}. Backup kept at {kept}")
        raise InstallError(f"Restore of {app_path} failed; backup kept at {kept}", restored=False) from e

    logger.info(f"{app_path.name} has been restored from backup")
    return True


def rescue_backup(backup):
    """
    Move a backup next to the working directory so cleanup leaves it alone.

    Returns:
        Path: Where the backup now lives
    """
    if not backup.exists():
        return backup
    rescued = backup.parent.parent / f"{backup.name}.{time.strftime('%Y%m%d_%H%M%S')}.backup"
    try:
        os.rename(backup, rescued)
    except OSError as e:
        logger.critical(f"Could not move backup out of {backup.parent}: {e}")
        return backup
    return rescued


def discard_backup(backup):
    """Remove the backup after a successful install."""
    if backup is not None and Path(backup).exists():
        logger.info(f"Removing backup: {backup}")
        shutil.rmtree(backup)


# =============================================================================
# Run Lock
# =============================================================================

def get_pid(pid_file=None):
    """Read PID from file."""
    pid_file = Path(pid_file or PID_FILE)
    try:
        if pid_file.exists():
            return int(pid_file.read_text().strip())
    except (ValueError, OSError):
        pass
    return None


def is_run_locked(pid_file=None):
    """
    Check if an update run currently holds the lock file.

    Args:
        pid_file: Lock file path (uses PID_FILE if None)

    Returns:
        bool: True if another open handle holds the lock
    """
    pid_file = Path(pid_file or PID_FILE)
    if str(pid_file) in _LOCK_HANDLES:
        return True
    if not pid_file.exists():
        return False

    with open(pid_file) as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            return True
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    return False


def acquire_run_lock(pid_file=None):
    """
    Take an exclusive lock on the lock file and record our PID in it.

    The lock lives as long as the open handle, so a crashed run never
    leaves a stale lock behind. The file itself is never removed.

    Returns:
        bool: True if the lock was acquired
    """
    pid_file = Path(pid_file or PID_FILE)
    key = str(pid_file)
    if key in _LOCK_HANDLES:
        logger.warning(f"Run lock {pid_file} is already held by this process")
        return False

    pid_file.parent.mkdir(parents=True, exist_ok=True)
    handle = open(pid_file, "a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        handle.close()
        logger.warning(f"Another update run is active (PID: {get_pid(pid_file)})")
        return False

    handle.seek(0)
    handle.truncate()
    handle.write(str(os.getpid()))
    handle.flush()
    _LOCK_HANDLES[key] = handle
    return True


def release_run_lock(pid_file=None):
    """Release the lock if we hold it."""
    pid_file = Path(pid_file or PID_FILE)
    handle = _LOCK_HANDLES.pop(str(pid_file), None)
    if handle is None:
        return

    try:
        handle.seek(0)
        handle.truncate()
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        logger.error(f"Failed to release run lock {pid_file}: {e}")
    finally:
        handle.close()
