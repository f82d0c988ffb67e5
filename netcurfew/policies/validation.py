"""Editing-boundary validation for rule records."""

from netcurfew.models import ConfigurationError, Rule
from netcurfew.models.rules import MAX_QUOTA_MINUTES
from netcurfew.policies.time_window import parse_hhmm
from netcurfew.policies.weekdays import selected_days


def validate_rule(rule: Rule, weekdays: object = None) -> list[str]:
    """Check a rule before it is saved.

    Args:
        rule: Rule to validate
        weekdays: The weekday selection as entered, if different from
            ``rule.week``. An explicit empty selection is rejected here,
            since an empty set means "every day" once persisted.

    Returns:
        List of problems (empty if the rule is valid)
    """
    problems = []
    target = None

    if not (rule.target or "").strip():
        problems.append("IP/MAC address is required")
    else:
        try:
            target = rule.parsed_target()
        except ConfigurationError as e:
            problems.append(str(e))

    for label, value in (("start", rule.time_start), ("end", rule.time_end)):
        try:
            parse_hhmm(value)
        except ConfigurationError as e:
            problems.append(f"{label} {e}")

    selection = rule.week if weekdays is None else weekdays
    if isinstance(selection, (list, tuple, set, frozenset)) and len(selection) == 0:
        problems.append("select at least one day")
    else:
        try:
            days = selected_days(selection)  # type: ignore[arg-type]
        except ConfigurationError as e:
            problems.append(str(e))
        else:
            # Only out-of-range values were given
            if days is not None and not days:
                problems.append("select at least one day")

    if rule.quota_enabled:
        minutes = rule.quota_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, int) or not 1 <= minutes <= MAX_QUOTA_MINUTES:
            problems.append(f"quota must be between 1-{MAX_QUOTA_MINUTES} minutes")
        elif target is not None and not target.quota_eligible:
            problems.append("quota needs a single MAC or IP target")

    return problems
