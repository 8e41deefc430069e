"""
Update Configuration Validator
Validates update.yaml configuration file using cerberus schema validation.
Can be used standalone or imported by update_on_idle.py.
"""
import re
import yaml
from cerberus import Validator
from pathlib import Path

# Schema definition for update configuration
CONFIG_SCHEMA = {
    "app_name": {"type": "string", "required": True, "empty": False},
    "app_path": {"type": "string", "required": True, "empty": False},
    "package_url": {
        "type": "string",
        "required": True,
        "regex": r"^https?://.+",
    },
    "package_name": {"type": "string", "default": "package.pkg", "empty": False},
    "manifest_file": {"type": "string", "default": "Distribution", "empty": False},
    "version_pattern": {
        "type": "string",
        "default": r'<product[^>]+version="([^"]+)"',
        "empty": False,
    },
    "version_key": {"type": "string", "default": "CFBundleShortVersionString"},
    "install_target": {"type": "string", "default": "/"},
    "work_root": {"type": "string", "default": "/private/var/tmp"},
    "console_path": {"type": "string", "default": "/dev/console"},
    "quit_timeout": {"type": "integer", "min": 0, "default": 30},
    "download": {
        "type": "dict",
        "default_setter": lambda document: {},
        "schema": {
            "retries": {"type": "integer", "min": 0, "default": 12},
            "timeout": {"type": "integer", "min": 1, "default": 300},
        },
    },
    "idle": {
        "type": "dict",
        "default_setter": lambda document: {},
        "schema": {
            "threshold_seconds": {"type": "integer", "min": 0, "default": 1200},
            "interval_seconds": {"type": "integer", "min": 0, "default": 300},
            "max_checks": {"type": "integer", "min": 1, "default": 108},
        },
    },
    "schedule": {
        "type": "dict",
        "required": False,
        "schema": {
            "every": {"type": "integer", "min": 1, "required": False},
            "unit": {
                "type": "string",
                "allowed": ["minutes", "hours", "days", "weeks"],
                "required": True
            },
            "at": {
                "type": "string",
                "regex": r"^(\d{2}:\d{2}|:\d{2})$",
                "required": False
            },
            "day": {
                "type": "string",
                "allowed": ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"],
                "required": False
            },
        },
    },
}

# Define which fields are valid for each schedule unit
VALID_FIELDS_BY_UNIT = {
    "minutes": {"every", "unit", "at"},
    "hours": {"every", "unit", "at"},
    "days": {"every", "unit", "at"},
    "weeks": {"every", "unit", "at", "day"},
}

# Time formats the schedule library accepts in at() for each unit
AT_FORMAT_BY_UNIT = {
    "minutes": (r"^:\d{2}$", ":SS"),
    "hours": (r"^(\d{2}:\d{2}|:\d{2})$", "MM:SS or :MM"),
    "days": (r"^\d{2}:\d{2}$", "HH:MM"),
    "weeks": (r"^\d{2}:\d{2}$", "HH:MM"),
}


def validate_schedule_fields(schedule):
    """
    Validate that schedule fields are appropriate for the unit type.

    Args:
        schedule: Schedule dictionary (may be None)

    Returns:
        list: List of error messages (empty if all valid)
    """
    errors = []
    if not schedule:
        return errors

    unit = schedule.get("unit")
    if not unit or unit not in VALID_FIELDS_BY_UNIT:
        return errors  # Schema validation will catch this

    valid_fields = VALID_FIELDS_BY_UNIT[unit]
    for field in schedule:
        if field not in valid_fields:
            errors.append(f"Schedule: field '{field}' is not used for '{unit}' schedules")

    at = schedule.get("at")
    if at is not None:
        pattern, expected = AT_FORMAT_BY_UNIT[unit]
        if not re.match(pattern, at):
            errors.append(f"Schedule: 'at' must be {expected} for '{unit}' schedules (got '{at}')")

    # schedule only supports a weekday together with an interval of 1
    if unit == "weeks" and schedule.get("day") and schedule.get("every", 1) != 1:
        errors.append("Schedule: 'day' requires 'every' to be 1")

    return errors


def validate_version_pattern(pattern):
    """Check that the version pattern compiles and captures exactly one group."""
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        return [f"version_pattern does not compile: {e}"]
    if compiled.groups != 1:
        return [f"version_pattern must contain exactly one capture group (found {compiled.groups})"]
    return []


def validate_config(config_path="update.yaml", strict=True):
    """
    Validate update configuration file.

    Args:
        config_path: Path to update.yaml file (string or Path)
        strict: If True, reject irrelevant fields for schedule type

    Returns:
        dict: Validated configuration data with defaults filled in

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML syntax is invalid
        ValueError: If config doesn't match schema
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f)

    if data is None:
        raise ValueError("Configuration file is empty")

    validator = Validator(CONFIG_SCHEMA)
    if not validator.validate(data):
        raise ValueError(f"Invalid configuration:\n{validator.errors}")

    config = validator.document
    errors = validate_version_pattern(config["version_pattern"])

    # Additional strict validation for field relevance
    if strict:
        errors.extend(validate_schedule_fields(config.get("schedule")))

    if errors:
        raise ValueError("Invalid configuration:\n" + "\n".join(errors))

    return config


def validate_and_print(config_path="update.yaml", strict=True):
    """
    Validate configuration and print result (for CLI usage).

    Args:
        config_path: Path to update.yaml file
        strict: If True, reject irrelevant fields

    Returns:
        dict: Validated configuration data, or None if invalid
    """
    try:
        data = validate_config(config_path, strict=strict)
        idle = data["idle"]
        print(f"[OK] YAML config is valid. (app: {data['app_name']})")
        print(f"  Package:  {data['package_url']}")
        print(f"  Retries:  {data['download']['retries']}")
        print(f"  Idle:     >={idle['threshold_seconds']}s, checked every {idle['interval_seconds']}s "
              f"up to {idle['max_checks']} times")
        if data.get("schedule"):
            print(f"  Schedule: {data['schedule']}")
        return data
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return None
    except yaml.YAMLError as e:
        print(f"[ERROR] YAML syntax error: {e}")
        return None
    except ValueError as e:
        print(f"[ERROR] {e}")
        return None


# CLI entry point
if __name__ == "__main__":
    import sys
    config_file = sys.argv[1] if len(sys.argv) > 1 else "update.yaml"
    result = validate_and_print(config_file)
    sys.exit(0 if result else 1)
