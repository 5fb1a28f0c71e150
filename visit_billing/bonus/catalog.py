"""Master rule catalog loading.

Rule definitions come from YAML or JSON files (one file or a directory)
or from the ``bonus_master`` table. Both sources share the same raw
dictionary shape, parsed here into ``RuleDefinition`` objects.

Usage:
    loader = CatalogLoader("config")
    catalog = loader.load_catalog()
    catalog = load_catalog_from_db(db_path)
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import date, timedelta
from pathlib import Path
from typing import Any

import yaml

from visit_billing.utils import parse_flexible_date

from .conditions import NUMERIC_METRICS, TEXT_FIELDS, parse_clock
from .errors import MalformedConditionError
from .models import (
    AllOfCondition,
    Condition,
    ConditionBranch,
    FieldMatchCondition,
    FieldPresentCondition,
    FlagCondition,
    InsuranceCategory,
    InvalidCondition,
    MatchMode,
    MonthlyCapCondition,
    MonthlyCountCondition,
    NumericCondition,
    NumericOperator,
    PointsMode,
    RuleDefinition,
    TimeWindowCondition,
)
from .versions import RuleCatalog

logger = logging.getLogger(__name__)


class CatalogValidationError(Exception):
    """Raised when catalog validation fails."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


# ============================================================
# Condition vocabulary
# ============================================================

# Master data written against the record screens uses camelCase names
FIELD_ALIASES = {
    "emergencyVisitReason": "emergency_reason",
    "emergency_visit_reason": "emergency_reason",
    "multipleVisitReason": "multi_staff_reason",
    "multiple_visit_reason": "multi_staff_reason",
    "longVisitReason": "long_visit_reason",
    "facilityId": "facility_id",
}

FLAG_PATTERNS = frozenset(
    {
        "has_24h_support_system",
        "has_24h_support_system_enhanced",
        "has_emergency_support_system",
        "has_emergency_support_system_enhanced",
        "is_discharge_date",
        "is_first_visit_of_plan",
        "has_collaboration_record",
        "is_terminal_care",
        "is_second_visit",
        "has_building",
        "patient_has_special_management",
        "requires_specialized_nurse",
    }
)

# pattern -> (metric, operator)
NUMERIC_PATTERNS: dict[str, tuple[str, NumericOperator]] = {
    "visit_duration_gte": ("visit_duration_minutes", NumericOperator.GE),
    "visit_duration_lt": ("visit_duration_minutes", NumericOperator.LT),
    "age_lt": ("patient_age", NumericOperator.LT),
    "age_gte": ("patient_age", NumericOperator.GE),
    "daily_visit_count_gte": ("daily_visit_ordinal", NumericOperator.GE),
}

# pattern -> (start, end, label); medical_/care_ prefixes share these windows
TIME_WINDOWS: dict[str, tuple[str, str, str]] = {
    "early_morning_time": ("06:00", "08:00", "early morning"),
    "night_time": ("18:00", "22:00", "night"),
    "late_night_time": ("22:00", "06:00", "late night"),
}

FIELD_MATCH_PATTERNS = {
    "field_equals": MatchMode.EQUALS,
    "field_contains": MatchMode.CONTAINS,
    "field_matches": MatchMode.REGEX,
}

OPERATOR_ALIASES = {
    "eq": NumericOperator.EQ,
    "==": NumericOperator.EQ,
    "ge": NumericOperator.GE,
    ">=": NumericOperator.GE,
    "greater_than_or_equal": NumericOperator.GE,
    "gt": NumericOperator.GT,
    ">": NumericOperator.GT,
    "greater_than": NumericOperator.GT,
    "le": NumericOperator.LE,
    "<=": NumericOperator.LE,
    "less_than_or_equal": NumericOperator.LE,
    "lt": NumericOperator.LT,
    "<": NumericOperator.LT,
    "less_than": NumericOperator.LT,
}


def _require(raw: dict[str, Any], key: str) -> Any:
    if raw.get(key) is None:
        raise MalformedConditionError(
            f"Condition {raw.get('pattern', '?')!r} is missing {key!r}", raw=raw
        )
    return raw[key]


def _text_field(raw: dict[str, Any]) -> str:
    name = str(_require(raw, "field"))
    name = FIELD_ALIASES.get(name, name)
    if name not in TEXT_FIELDS:
        raise MalformedConditionError(f"Unknown field {name!r}", raw=raw)
    return name


def _number(raw: dict[str, Any], key: str = "value") -> float:
    value = _require(raw, key)
    if isinstance(value, bool):
        raise MalformedConditionError(f"{key!r} must be a number, got {value!r}", raw=raw)
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MalformedConditionError(f"{key!r} must be a number, got {value!r}", raw=raw) from e


def _expected_flag(raw: dict[str, Any]) -> bool:
    # {"pattern": "has_24h_support_system", "operator": "equals", "value": false}
    if "expected" in raw:
        if not isinstance(raw["expected"], bool):
            raise MalformedConditionError(
                f"'expected' must be true or false, got {raw['expected']!r}", raw=raw
            )
        return raw["expected"]
    if raw.get("operator") == "equals" and isinstance(raw.get("value"), bool):
        return raw["value"]
    return True


def parse_condition(raw: Any) -> Condition:
    """Parse one master-data condition entry into a condition variant.

    Entries are dictionaries keyed by ``pattern`` (``type`` and ``kind``
    are accepted too).

    Raises:
        MalformedConditionError: Unknown pattern or missing/invalid operands
    """
    if not isinstance(raw, dict):
        raise MalformedConditionError(f"Condition must be a mapping, got {type(raw).__name__}", raw=raw)

    pattern = raw.get("pattern") or raw.get("type") or raw.get("kind")
    if not pattern:
        raise MalformedConditionError("Condition has no pattern", raw=raw)
    pattern = str(pattern)

    if pattern in FLAG_PATTERNS:
        return FlagCondition(flag=pattern, expected=_expected_flag(raw))
    if pattern == "flag":
        return FlagCondition(flag=str(_require(raw, "flag")), expected=_expected_flag(raw))

    if pattern in ("field_not_empty", "field_present"):
        return FieldPresentCondition(field=_text_field(raw))

    if pattern in FIELD_MATCH_PATTERNS:
        mode = FIELD_MATCH_PATTERNS[pattern]
        value = str(_require(raw, "value"))
        if mode == MatchMode.REGEX:
            try:
                re.compile(value)
            except re.error as e:
                raise MalformedConditionError(f"Invalid regex {value!r}: {e}", raw=raw) from e
        return FieldMatchCondition(field=_text_field(raw), value=value, mode=mode)

    if pattern in NUMERIC_PATTERNS:
        metric, operator = NUMERIC_PATTERNS[pattern]
        return NumericCondition(metric=metric, operator=operator, threshold=_number(raw))
    if pattern == "care_visit_duration_90plus":
        return NumericCondition("visit_duration_minutes", NumericOperator.GE, 90)
    if pattern == "numeric":
        metric = str(_require(raw, "metric"))
        if metric not in NUMERIC_METRICS:
            raise MalformedConditionError(f"Unknown metric {metric!r}", raw=raw)
        operator = OPERATOR_ALIASES.get(str(_require(raw, "operator")))
        if operator is None:
            raise MalformedConditionError(f"Unknown operator {raw['operator']!r}", raw=raw)
        threshold = _number(raw, "threshold" if "threshold" in raw else "value")
        return NumericCondition(metric=metric, operator=operator, threshold=threshold)

    window_name = re.sub(r"^(medical|care)_", "", pattern)
    if window_name in TIME_WINDOWS:
        start, end, label = TIME_WINDOWS[window_name]
        return TimeWindowCondition(parse_clock(start), parse_clock(end), label=label)
    if pattern == "time_window":
        try:
            start = parse_clock(_require(raw, "start"))
            end = parse_clock(_require(raw, "end"))
        except ValueError as e:
            raise MalformedConditionError(f"Invalid time window: {e}", raw=raw) from e
        return TimeWindowCondition(start, end, label=raw.get("label"))

    if pattern == "monthly_visit_limit":
        limit = raw.get("value", raw.get("limit", 1))
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise MalformedConditionError(f"Monthly limit must be an integer, got {limit!r}", raw=raw)
        return MonthlyCapCondition(limit=limit)
    if pattern == "monthly_count":
        operator = OPERATOR_ALIASES.get(str(_require(raw, "operator")))
        if operator is None:
            raise MalformedConditionError(f"Unknown operator {raw['operator']!r}", raw=raw)
        threshold = _require(raw, "value")
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise MalformedConditionError(
                f"Monthly count threshold must be a non-negative integer, got {threshold!r}",
                raw=raw,
            )
        return MonthlyCountCondition(operator=operator, threshold=threshold)

    if pattern == "all_of":
        nested = _require(raw, "conditions")
        if not isinstance(nested, list) or not nested:
            raise MalformedConditionError("all_of needs a non-empty conditions list", raw=raw)
        return AllOfCondition(tuple(parse_condition(c) for c in nested))

    raise MalformedConditionError(f"Unknown condition pattern {pattern!r}", raw=raw)


def parse_condition_lenient(raw: Any, source: str = "") -> Condition:
    """Like parse_condition, but malformed entries become InvalidCondition."""
    try:
        return parse_condition(raw)
    except MalformedConditionError as e:
        logger.warning(f"Malformed condition in {source or 'catalog'}: {e}")
        return InvalidCondition(raw=raw, error=str(e))


# ============================================================
# Conditional points configurations
# ============================================================


def _time_based_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    # late night is checked first; its window wraps midnight
    branches = []
    for key in ("late_night", "night", "early_morning"):
        if key in config:
            start, end, label = TIME_WINDOWS[f"{key}_time"]
            branches.append(
                ConditionBranch(
                    TimeWindowCondition(parse_clock(start), parse_clock(end), label=label),
                    int(config[key]),
                    label=key,
                )
            )
    return branches


def _duration_based_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    entries: list[tuple[float, NumericOperator, int, str]] = []
    if isinstance(config.get("conditions"), list):
        for entry in config["conditions"]:
            threshold = float(entry.get("durationMinutes", entry.get("duration_minutes", 0)))
            operator = OPERATOR_ALIASES.get(entry.get("operator", "ge"), NumericOperator.GE)
            label = entry.get("description") or f"duration_{int(threshold)}"
            entries.append((threshold, operator, int(entry["points"]), label))
    else:
        for key, points in config.items():
            match = re.fullmatch(r"duration_(\d+)", key)
            if match:
                entries.append((float(match.group(1)), NumericOperator.GE, int(points), key))
    # longest threshold first
    entries.sort(key=lambda e: e[0], reverse=True)
    return [
        ConditionBranch(NumericCondition("visit_duration_minutes", op, threshold), points, label)
        for threshold, op, points, label in entries
    ]


def _age_based_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    ranges = []
    for key, points in config.items():
        match = re.fullmatch(r"age_(\d+)(?:_(\d+))?", key)
        if match:
            low = int(match.group(1))
            high = int(match.group(2)) if match.group(2) else None
            ranges.append((low, high, int(points), key))
    ranges.sort(key=lambda r: r[0])

    branches = []
    for low, high, points, key in ranges:
        parts: list[Condition] = [NumericCondition("patient_age", NumericOperator.GE, low)]
        if high is not None:
            parts.append(NumericCondition("patient_age", NumericOperator.LT, high))
        branches.append(ConditionBranch(AllOfCondition(tuple(parts)), points, label=key))
    return branches


def _visit_count_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    branches = []
    if "visit_3_plus" in config:
        branches.append(
            ConditionBranch(
                NumericCondition("daily_visit_ordinal", NumericOperator.GE, 3),
                int(config["visit_3_plus"]),
                label="visit_3_plus",
            )
        )
    for ordinal in (2, 1):
        key = f"visit_{ordinal}"
        if key in config:
            branches.append(
                ConditionBranch(
                    NumericCondition("daily_visit_ordinal", NumericOperator.EQ, ordinal),
                    int(config[key]),
                    label=key,
                )
            )
    return branches


MONTHLY_THRESHOLD_DEFAULT = 14


def _monthly_threshold_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    # the first `threshold` applications in the month earn the higher points
    threshold = int(config.get("threshold", MONTHLY_THRESHOLD_DEFAULT))
    branches = []
    if "up_to_14" in config:
        branches.append(
            ConditionBranch(
                MonthlyCountCondition(NumericOperator.LT, threshold),
                int(config["up_to_14"]),
                label="up_to_14_days",
            )
        )
    if "after_14" in config:
        branches.append(
            ConditionBranch(
                MonthlyCountCondition(NumericOperator.GE, threshold),
                int(config["after_14"]),
                label="after_14_days",
            )
        )
    return branches


def _building_occupancy_branches(config: dict[str, Any]) -> list[ConditionBranch]:
    branches = []
    if "occupancy_1_2" in config:
        branches.append(
            ConditionBranch(
                NumericCondition("building_occupancy", NumericOperator.LE, 2),
                int(config["occupancy_1_2"]),
                label="occupancy_1_2",
            )
        )
    if "occupancy_3_plus" in config:
        branches.append(
            ConditionBranch(
                NumericCondition("building_occupancy", NumericOperator.GE, 3),
                int(config["occupancy_3_plus"]),
                label="occupancy_3_plus",
            )
        )
    return branches


POINTS_CONFIG_EXPANDERS = {
    "time_based": _time_based_branches,
    "duration_based": _duration_based_branches,
    "age_based": _age_based_branches,
    "visit_count": _visit_count_branches,
    "monthly_14day_threshold": _monthly_threshold_branches,
    "building_occupancy": _building_occupancy_branches,
}


# ============================================================
# Rule parsing
# ============================================================


def _first(raw: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return default


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        # JSON columns from the master table
        value = json.loads(text) if text.startswith("[") else [text]
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _parse_branch(raw: Any, source: str) -> ConditionBranch:
    if not isinstance(raw, dict) or raw.get("points") is None:
        raise ValueError(f"Branch must be a mapping with points: {raw!r}")
    if "condition" in raw:
        condition_raw = raw["condition"]
    else:
        condition_raw = {k: v for k, v in raw.items() if k not in ("points", "label")}
    return ConditionBranch(
        condition=parse_condition_lenient(condition_raw, source),
        points=int(raw["points"]),
        label=raw.get("label"),
    )


def parse_rule(raw: dict[str, Any], source: str = "") -> RuleDefinition:
    """Parse one raw rule entry into a RuleDefinition.

    ``effective_to`` is exclusive. Entries that carry the inclusive
    ``valid_to`` date of the legacy master screens are shifted by a day.

    Raises:
        ValueError: Missing or invalid rule-level fields
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Rule entry must be a mapping, got {type(raw).__name__}")

    rule_code = _first(raw, "rule_code", "bonus_code", "bonusCode")
    if not rule_code:
        raise ValueError("Missing required field: rule_code")
    label = f"{source}:{rule_code}" if source else str(rule_code)

    version = str(_first(raw, "version", default="1"))
    display_name = str(_first(raw, "display_name", "bonus_name", "bonusName", default=rule_code))

    category_raw = _first(raw, "insurance_category", "insurance_type", "insuranceType")
    try:
        category = InsuranceCategory(category_raw)
    except ValueError as e:
        raise ValueError(
            f"Invalid insurance_category {category_raw!r}. "
            f"Must be one of: {[c.value for c in InsuranceCategory]}"
        ) from e

    effective_from = parse_flexible_date(_first(raw, "effective_from", "valid_from", "validFrom"))
    if effective_from is None:
        raise ValueError("Missing or invalid effective_from")

    effective_to: date | None = None
    if raw.get("effective_to") is not None:
        effective_to = parse_flexible_date(raw["effective_to"])
        if effective_to is None:
            raise ValueError(f"Invalid effective_to {raw['effective_to']!r}")
    elif _first(raw, "valid_to", "validTo") is not None:
        inclusive = parse_flexible_date(_first(raw, "valid_to", "validTo"))
        if inclusive is None:
            raise ValueError("Invalid valid_to")
        effective_to = inclusive + timedelta(days=1)
    if effective_to is not None and effective_to <= effective_from:
        raise ValueError(f"effective_to {effective_to} must be after effective_from {effective_from}")

    requirements = tuple(
        parse_condition_lenient(c, label)
        for c in _as_list(_first(raw, "requirements", "predefined_conditions", "predefinedConditions"))
    )

    branches = [_parse_branch(b, label) for b in _as_list(raw.get("branches"))]
    pattern = _first(raw, "conditional_pattern", "conditionalPattern")
    if pattern:
        expander = POINTS_CONFIG_EXPANDERS.get(pattern)
        if expander is None:
            raise ValueError(f"Unknown conditional_pattern {pattern!r}")
        config = _first(raw, "points_config", "pointsConfig", default={})
        if isinstance(config, str):
            config = json.loads(config)
        branches.extend(expander(config))

    mode_raw = _first(raw, "points_mode", "points_type", "pointsType")
    if mode_raw is None:
        mode_raw = "conditional" if branches else "fixed"
    try:
        points_mode = PointsMode(mode_raw)
    except ValueError as e:
        raise ValueError(f"Invalid points_mode {mode_raw!r}") from e

    fixed_points = _first(raw, "fixed_points", "points_value", "pointsValue")
    if points_mode == PointsMode.FIXED:
        if fixed_points is None:
            raise ValueError("Fixed rules require fixed_points")
        if branches:
            raise ValueError("Fixed rules cannot define branches")
        fixed_points = int(fixed_points)
    else:
        if not branches:
            raise ValueError("Conditional rules require at least one branch")
        fixed_points = None

    active = raw.get("active", raw.get("is_active", True))
    return RuleDefinition(
        rule_code=str(rule_code),
        version=version,
        display_name=display_name,
        insurance_category=category,
        points_mode=points_mode,
        effective_from=effective_from,
        effective_to=effective_to,
        fixed_points=fixed_points,
        branches=tuple(branches),
        requirements=requirements,
        active=bool(active),
        display_order=int(_first(raw, "display_order", "displayOrder", default=999)),
        can_combine_with=frozenset(_as_list(raw.get("can_combine_with"))),
        cannot_combine_with=frozenset(_as_list(raw.get("cannot_combine_with"))),
    )


def parse_rules(entries: list[dict[str, Any]], source: str) -> list[RuleDefinition]:
    """Parse every entry, collecting all errors before raising."""
    rules = []
    errors = []
    for idx, entry in enumerate(entries):
        try:
            rules.append(parse_rule(entry, source))
        except (ValueError, TypeError, KeyError) as e:
            code = entry.get("rule_code") if isinstance(entry, dict) else None
            errors.append({"file": source, "index": idx, "rule_code": code, "error": str(e)})

    if errors:
        raise CatalogValidationError(
            f"Validation failed for {len(errors)} rule(s) in {source}",
            errors=errors,
        )
    return rules


class CatalogLoader:
    """Loads and validates rule definitions from files."""

    def __init__(self, config_path: str | Path | None = None):
        """Initialize the catalog loader.

        Args:
            config_path: Catalog file or directory. Defaults to
                         ./config/bonus_catalog.yaml
        """
        self.config_path = Path(config_path) if config_path else Path("config/bonus_catalog.yaml")

    def load_catalog(self) -> RuleCatalog:
        """Load the configured path into a catalog snapshot."""
        if self.config_path.is_dir():
            definitions = self.load_directory(self.config_path)
        else:
            definitions = self.load_file(self.config_path)

        catalog = RuleCatalog(definitions)
        for problem in catalog.validate():
            logger.error(f"Catalog integrity problem: {problem}")
        logger.info(f"Loaded {len(catalog)} rule version(s) from {self.config_path}")
        return catalog

    def load_file(self, file_path: str | Path) -> list[RuleDefinition]:
        """Load rule definitions from a single file.

        Raises:
            CatalogValidationError: If validation fails
            FileNotFoundError: If file doesn't exist
        """
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Catalog file not found: {path}")

        suffix = path.suffix.lower()
        with open(path, encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported catalog format: {suffix}")

        return self._parse_catalog(data, str(path))

    def load_directory(self, directory: str | Path) -> list[RuleDefinition]:
        """Load all rule definitions from a directory.

        Raises:
            CatalogValidationError: If any validation fails
        """
        config_dir = Path(directory)

        if not config_dir.exists():
            logger.warning(f"Catalog directory does not exist: {config_dir}")
            return []

        definitions = []
        errors = []

        for pattern in ("*.yaml", "*.yml", "*.json"):
            for file_path in sorted(config_dir.glob(pattern)):
                try:
                    file_rules = self.load_file(file_path)
                    definitions.extend(file_rules)
                    logger.info(f"Loaded {len(file_rules)} rule(s) from {file_path.name}")
                except CatalogValidationError as e:
                    errors.extend(e.errors)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    errors.append({"file": str(file_path), "error": str(e)})

        if errors:
            raise CatalogValidationError(
                f"Validation failed for {len(errors)} item(s)",
                errors=errors,
            )

        return definitions

    def _parse_catalog(self, data: Any, source: str) -> list[RuleDefinition]:
        # Either a top-level "rules" array, a bare list, or a single rule
        if isinstance(data, dict):
            entries = data["rules"] if "rules" in data else [data]
        elif isinstance(data, list):
            entries = data
        elif data is None:
            entries = []
        else:
            raise CatalogValidationError(
                f"Invalid catalog format in {source}",
                errors=[{"file": source, "error": "Expected dict or list"}],
            )
        return parse_rules(entries, source)


# ============================================================
# bonus_master table
# ============================================================

MASTER_COLUMNS = (
    "rule_code",
    "version",
    "display_name",
    "insurance_category",
    "points_mode",
    "fixed_points",
    "effective_from",
    "effective_to",
    "active",
    "display_order",
    "requirements",
    "branches",
    "can_combine_with",
    "cannot_combine_with",
)

_JSON_COLUMNS = ("requirements", "branches", "can_combine_with", "cannot_combine_with")


class BonusMasterStore:
    """SQLite storage of raw rule definitions.

    Attributes:
        db_path: Path to the SQLite database
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_tables()

    def _init_tables(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bonus_master (
                    rule_code TEXT NOT NULL,
                    version TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    insurance_category TEXT NOT NULL,
                    points_mode TEXT NOT NULL,
                    fixed_points INTEGER,
                    effective_from TEXT NOT NULL,
                    effective_to TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    display_order INTEGER NOT NULL DEFAULT 999,
                    requirements TEXT,
                    branches TEXT,
                    can_combine_with TEXT,
                    cannot_combine_with TEXT,
                    PRIMARY KEY (rule_code, version)
                )
            """)
            conn.commit()

    def save_rule(self, raw: dict[str, Any]) -> RuleDefinition:
        """Validate a raw rule entry and store it (replacing the same version)."""
        rule = parse_rule(raw, "bonus_master")
        values = {
            "rule_code": rule.rule_code,
            "version": rule.version,
            "display_name": rule.display_name,
            "insurance_category": rule.insurance_category.value,
            "points_mode": rule.points_mode.value,
            "fixed_points": rule.fixed_points,
            "effective_from": rule.effective_from.isoformat(),
            "effective_to": rule.effective_to.isoformat() if rule.effective_to else None,
            "active": 1 if rule.active else 0,
            "display_order": rule.display_order,
            "requirements": json.dumps(
                _as_list(_first(raw, "requirements", "predefined_conditions", "predefinedConditions"))
            ),
            "branches": json.dumps(_as_list(raw.get("branches"))),
            "can_combine_with": json.dumps(sorted(rule.can_combine_with)),
            "cannot_combine_with": json.dumps(sorted(rule.cannot_combine_with)),
        }
        if _first(raw, "conditional_pattern", "conditionalPattern"):
            # store expanded branches so the table is self-contained
            values["branches"] = json.dumps(_as_list(raw.get("branches")) + _describe_expanded(raw))
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                f"""
                INSERT OR REPLACE INTO bonus_master ({", ".join(MASTER_COLUMNS)})
                VALUES ({", ".join("?" for _ in MASTER_COLUMNS)})
                """,
                [values[c] for c in MASTER_COLUMNS],
            )
            conn.commit()
        return rule

    def load_raw(self) -> list[dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"SELECT {', '.join(MASTER_COLUMNS)} FROM bonus_master "
                "ORDER BY rule_code, effective_from"
            ).fetchall()

        entries = []
        for row in rows:
            entry = dict(row)
            for column in _JSON_COLUMNS:
                entry[column] = json.loads(entry[column]) if entry[column] else []
            entry["active"] = bool(entry["active"])
            entries.append(entry)
        return entries


def _describe_expanded(raw: dict[str, Any]) -> list[dict[str, Any]]:
    """Raw branch entries equivalent to a conditional_pattern config."""
    expander = POINTS_CONFIG_EXPANDERS[_first(raw, "conditional_pattern", "conditionalPattern")]
    config = _first(raw, "points_config", "pointsConfig", default={})
    if isinstance(config, str):
        config = json.loads(config)
    return [
        {"condition": _condition_to_raw(b.condition), "points": b.points, "label": b.label}
        for b in expander(config)
    ]


def _condition_to_raw(condition: Condition) -> dict[str, Any]:
    if isinstance(condition, TimeWindowCondition):
        return {
            "pattern": "time_window",
            "start": f"{condition.start:%H:%M}",
            "end": f"{condition.end:%H:%M}",
            "label": condition.label,
        }
    if isinstance(condition, NumericCondition):
        return {
            "pattern": "numeric",
            "metric": condition.metric,
            "operator": condition.operator.value,
            "threshold": condition.threshold,
        }
    if isinstance(condition, MonthlyCountCondition):
        return {
            "pattern": "monthly_count",
            "operator": condition.operator.value,
            "value": condition.threshold,
        }
    if isinstance(condition, MonthlyCapCondition):
        return {"pattern": "monthly_visit_limit", "value": condition.limit}
    if isinstance(condition, AllOfCondition):
        return {"pattern": "all_of", "conditions": [_condition_to_raw(c) for c in condition.conditions]}
    raise ValueError(f"Cannot serialise {type(condition).__name__}")


def load_catalog_from_db(db_path: str) -> RuleCatalog:
    """Build a catalog snapshot from the bonus_master table."""
    entries = BonusMasterStore(db_path).load_raw()
    catalog = RuleCatalog(parse_rules(entries, "bonus_master"))
    for problem in catalog.validate():
        logger.error(f"Catalog integrity problem: {problem}")
    logger.info(f"Loaded {len(catalog)} rule version(s) from bonus_master")
    return catalog
