"""Configuration loading for netcurfew.

Loads settings from TOML config file with CLI override support.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli

from netcurfew.enforcers.directives import CHAINS
from netcurfew.models import ConfigurationError, Rule
from netcurfew.models.rules import DEFAULT_QUOTA_MINUTES
from netcurfew.policies import WeekdaySet, validate_rule
from netcurfew.policies.quota import validate_reset_hour

logger = logging.getLogger(__name__)


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("netcurfew.toml"),  # Current directory
        Path.home() / ".config" / "netcurfew" / "netcurfew.toml",
        Path("/etc/netcurfew/netcurfew.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """Find the first existing config file."""
    for path in get_config_search_paths():
        if path.exists():
            return path
    return None


@dataclass
class Config:
    """Loaded configuration with all sections."""

    # Database
    db_path: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "netcurfew" / "netcurfew.db")

    # Daemon
    status_interval: float = 5.0  # seconds between status/time-window ticks
    quota_interval: float = 60.0  # seconds between quota accruals
    max_elapsed_minutes: float = 10.0  # larger gaps are clock jumps

    # Quota
    reset_hour: int = 0

    # Enforcement
    chain: str = "forward"
    idlist_path: Path = Path("/var/netcurfew.idlist")
    status_path: Path = Path("/var/run/netcurfew/status.json")

    # Network state
    arp_path: Path = Path("/proc/net/arp")
    leases_path: Optional[Path] = Path("/tmp/dhcp.leases")
    interfaces: list[str] = field(default_factory=list)
    resolve_ip_targets: bool = True

    # Slack
    slack_enabled: bool = False
    slack_webhook_url: Optional[str] = None
    slack_notify_unblock: bool = True

    # Seed rules from [[rules]], with validation problems per rule id
    rules: list[Rule] = field(default_factory=list)
    rule_problems: dict[int, list[str]] = field(default_factory=dict)


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Explicit path to config file, or None to search

    Returns:
        Config object with loaded values
    """
    config = Config()

    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        return config

    logger.info(f"Loading config from {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config file: {e}")
        return config

    # Database section
    if "database" in data:
        db = data["database"]
        if "path" in db:
            config.db_path = Path(db["path"]).expanduser()

    # Daemon section
    if "daemon" in data:
        daemon = data["daemon"]
        if "status_interval" in daemon:
            config.status_interval = float(daemon["status_interval"])
        if "quota_interval" in daemon:
            config.quota_interval = float(daemon["quota_interval"])
        if "max_elapsed_minutes" in daemon:
            config.max_elapsed_minutes = float(daemon["max_elapsed_minutes"])

    # Quota section
    if "quota" in data:
        quota = data["quota"]
        if "reset_hour" in quota:
            try:
                config.reset_hour = validate_reset_hour(quota["reset_hour"])
            except ConfigurationError as e:
                logger.warning(f"{e}; using midnight")

    # Enforcement section
    if "enforcement" in data:
        enforcement = data["enforcement"]
        if "chain" in enforcement:
            if enforcement["chain"] in CHAINS:
                config.chain = enforcement["chain"]
            else:
                logger.warning(f"Unknown chain {enforcement['chain']!r}; using 'forward'")
        if "idlist_path" in enforcement:
            config.idlist_path = Path(enforcement["idlist_path"]).expanduser()
        if "status_path" in enforcement:
            config.status_path = Path(enforcement["status_path"]).expanduser()

    # Network section
    if "network" in data:
        network = data["network"]
        if "arp_path" in network:
            config.arp_path = Path(network["arp_path"])
        if "leases_path" in network:
            # Empty string disables the leases lookup
            config.leases_path = Path(network["leases_path"]) if network["leases_path"] else None
        if "interfaces" in network:
            config.interfaces = list(network["interfaces"])
        if "resolve_ip_targets" in network:
            config.resolve_ip_targets = network["resolve_ip_targets"]

    # Slack section
    if "slack" in data:
        slack = data["slack"]
        if "enabled" in slack:
            config.slack_enabled = slack["enabled"]
        if "webhook_url" in slack:
            config.slack_webhook_url = slack["webhook_url"]
        if "notify_unblock" in slack:
            config.slack_notify_unblock = slack["notify_unblock"]

    # Rules
    if "rules" in data:
        config.rules, config.rule_problems = parse_rules(data["rules"])

    return config


def parse_rules(rules_data: list[dict[str, Any]]) -> tuple[list[Rule], dict[int, list[str]]]:
    """Build rules from ``[[rules]]`` tables.

    Rule ids default to the position in the list. Weekdays may be a list of
    numbers or day names, a comma separated string, or "0" for every day.

    Returns:
        Tuple of (rules, validation problems keyed by rule id)
    """
    rules = []
    problems: dict[int, list[str]] = {}

    for index, rule_data in enumerate(rules_data):
        raw_weekdays = rule_data.get("weekdays", "0")
        try:
            week = WeekdaySet.canonicalize(raw_weekdays)
        except ConfigurationError:
            # Keep the raw value so validation reports it
            week = str(raw_weekdays)

        rule = Rule(
            id=rule_data.get("id", index),
            uid=rule_data.get("uid"),
            comment=rule_data.get("comment", ""),
            enabled=rule_data.get("enabled", True),
            target=rule_data.get("target", ""),
            time_start=rule_data.get("time_start", "00:00"),
            time_end=rule_data.get("time_end", "23:59"),
            week=week,
            quota_enabled=rule_data.get("quota_enabled", False),
            quota_minutes=rule_data.get("quota_minutes", DEFAULT_QUOTA_MINUTES),
        )
        rules.append(rule)

        rule_problems = validate_rule(rule, weekdays=raw_weekdays)
        if rule_problems:
            problems[rule.id] = rule_problems

    seen: set[int] = set()
    uid_owners: dict[str, int] = {}
    for rule in rules:
        if rule.id in seen:
            problems.setdefault(rule.id, []).append(f"duplicate rule id {rule.id}")
        seen.add(rule.id)

        if rule.uid:
            owner = uid_owners.setdefault(rule.uid, rule.id)
            if owner != rule.id:
                problems.setdefault(rule.id, []).append(f"uid {rule.uid} is already used by rule {owner}")

    return rules, problems


def merge_cli_options(config: Config, **cli_options: Any) -> Config:
    """Merge CLI options into config (CLI takes precedence).

    Args:
        config: Base config from file
        **cli_options: CLI option overrides (None values are ignored)

    Returns:
        Config with CLI overrides applied
    """
    mappings = {
        "status_interval": "status_interval",
        "quota_interval": "quota_interval",
        "reset_hour": "reset_hour",
        "chain": "chain",
        "idlist": "idlist_path",
        "status_file": "status_path",
        "db": "db_path",
    }

    for cli_name, config_name in mappings.items():
        if cli_name in cli_options:
            value = cli_options[cli_name]
            if value is not None and value != "":
                if cli_name in ("db", "idlist", "status_file"):
                    value = Path(value)
                setattr(config, config_name, value)

    return config
