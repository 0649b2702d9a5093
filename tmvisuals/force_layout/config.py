from __future__ import annotations

import math
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable, Iterable, Literal

from .constants import (
    LAYOUT_DEFAULT_HEIGHT,
    LAYOUT_DEFAULT_MAX_FPS,
    LAYOUT_DEFAULT_WIDTH,
    THROTTLE_LADDER,
)
from .errors import ConfigurationError

ChangeSource = Literal["host", "governor", "reset", "import", "focus"]

RULESET_VERSION = "2"


@dataclass(frozen=True)
class ForceLayoutConfig:
    # Simulation
    alpha_decay: float = 0.0228
    alpha_min: float = 0.001
    velocity_decay: float = 0.4

    # Force strengths
    link_distance: float = 200.0
    link_strength: float = 0.7
    charge_strength: float = -800.0
    center_strength: float = 0.1
    collision_radius: float = 160.0
    collision_strength: float = 0.8

    # Layout dimensions
    width: float = LAYOUT_DEFAULT_WIDTH
    height: float = LAYOUT_DEFAULT_HEIGHT

    # Active task focus
    active_task_id: str | None = None
    focus_strength: float = 2.0
    focus_lock: bool = True

    # Smart spacing
    enable_smart_spacing: bool = True
    priority_spacing_multiplier: float = 1.3
    cluster_spacing: float = 150.0
    min_node_separation: float = 180.0
    density_adaptation: bool = True
    # Reserved. Validated and exported, never read by the engine.
    edge_bundling: bool = False

    # Performance (host-tunable)
    enable_performance_monitoring: bool = True
    use_worker_offload: bool = True
    max_frame_rate: float = LAYOUT_DEFAULT_MAX_FPS
    emergency_throttle_threshold: int = 500
    adaptive_quality: bool = True
    memory_usage_limit: float = 200.0

    # Performance (governor-owned)
    collision_sample_ratio: float = float(THROTTLE_LADDER[0]["collision_sample_ratio"])
    barnes_hut_theta: float = float(THROTTLE_LADDER[0]["barnes_hut_theta"])
    quadtree_max_items: int = int(THROTTLE_LADDER[0]["quadtree_max_items"])
    quadtree_max_depth: int = int(THROTTLE_LADDER[0]["quadtree_max_depth"])
    tick_interval_ms: float = 0.0
    spacing_recompute_interval: int = 1
    simulation_frozen: bool = False

    @property
    def center(self) -> tuple[float, float]:
        return (self.width / 2.0, self.height / 2.0)


DEFAULT_FORCE_CONFIG = ForceLayoutConfig()

FIELD_NAMES: tuple[str, ...] = tuple(item.name for item in fields(ForceLayoutConfig))
GOVERNOR_FIELDS: frozenset[str] = frozenset(
    {
        "collision_sample_ratio",
        "barnes_hut_theta",
        "quadtree_max_items",
        "quadtree_max_depth",
        "tick_interval_ms",
        "spacing_recompute_interval",
        "simulation_frozen",
    }
)
_BOOL_FIELDS: frozenset[str] = frozenset(
    item.name for item in fields(ForceLayoutConfig) if item.type in ("bool", bool)
)
_INT_FIELDS: frozenset[str] = frozenset(
    item.name for item in fields(ForceLayoutConfig) if item.type in ("int", int)
)
_OPTIONAL_TEXT_FIELDS: frozenset[str] = frozenset({"active_task_id"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


_CAMEL_TO_FIELD: dict[str, str] = {_camel(name): name for name in FIELD_NAMES}


def normalize_key(key: str) -> str | None:
    text = str(key)
    if text in FIELD_NAMES:
        return text
    return _CAMEL_TO_FIELD.get(text)


@dataclass(frozen=True)
class ValidationRule:
    """One constraint over a candidate config.

    ``check`` returns True when the candidate satisfies the rule. ``fields``
    names the keys the rule reads; the rule is only evaluated when one of them
    is present in the partial being validated, unless ``always`` is set.
    """

    name: str
    fields: tuple[str, ...]
    check: Callable[[ForceLayoutConfig], bool]
    message: str
    severity: Literal["error", "warning"] = "error"
    always: bool = False


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: tuple[ValidationRule, ...]

    def extended(self, version: str, extra: Iterable[ValidationRule]) -> "RuleSet":
        return RuleSet(version=version, rules=self.rules + tuple(extra))


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config: ForceLayoutConfig | None = None
    changes: list["FieldChange"] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class FieldChange:
    name: str
    old: Any
    new: Any


def _range(name: str, low: float, high: float, *, low_open: bool = False) -> ValidationRule:
    def check(config: ForceLayoutConfig) -> bool:
        value = getattr(config, name)
        above = value > low if low_open else value >= low
        return above and value <= high

    bracket = "(" if low_open else "["
    return ValidationRule(
        name=f"{name}-range",
        fields=(name,),
        check=check,
        message=f"{name} must be in {bracket}{low:g}, {high:g}]",
    )


def _positive(name: str) -> ValidationRule:
    return ValidationRule(
        name=f"{name}-positive",
        fields=(name,),
        check=lambda config: getattr(config, name) > 0,
        message=f"{name} must be positive",
    )


def _non_negative(name: str) -> ValidationRule:
    return ValidationRule(
        name=f"{name}-non-negative",
        fields=(name,),
        check=lambda config: getattr(config, name) >= 0,
        message=f"{name} must be zero or positive",
    )


DEFAULT_RULES = RuleSet(
    version=RULESET_VERSION,
    rules=(
        _range("alpha_decay", 0.0, 1.0, low_open=True),
        _range("alpha_min", 0.0, 1.0, low_open=True),
        _range("velocity_decay", 0.0, 1.0),
        _non_negative("link_distance"),
        _range("link_strength", 0.0, 1.0),
        ValidationRule(
            name="charge_strength-sign",
            fields=("charge_strength",),
            check=lambda config: config.charge_strength <= 0,
            message="charge_strength must be zero or negative (repulsive)",
        ),
        _range("center_strength", 0.0, 1.0),
        _positive("collision_radius"),
        _range("collision_strength", 0.0, 1.0),
        _positive("width"),
        _positive("height"),
        _non_negative("focus_strength"),
        _positive("priority_spacing_multiplier"),
        _non_negative("cluster_spacing"),
        _non_negative("min_node_separation"),
        _positive("max_frame_rate"),
        _positive("emergency_throttle_threshold"),
        _positive("memory_usage_limit"),
        _range("collision_sample_ratio", 0.0, 1.0, low_open=True),
        _range("barnes_hut_theta", 0.0, 2.0, low_open=True),
        _positive("quadtree_max_items"),
        _positive("quadtree_max_depth"),
        _non_negative("tick_interval_ms"),
        _positive("spacing_recompute_interval"),
        ValidationRule(
            name="max_frame_rate-recommended",
            fields=("max_frame_rate",),
            check=lambda config: 1 <= config.max_frame_rate <= 120,
            message="max_frame_rate outside recommended range (1-120 fps)",
            severity="warning",
        ),
        ValidationRule(
            name="emergency_throttle_threshold-low",
            fields=("emergency_throttle_threshold",),
            check=lambda config: config.emergency_throttle_threshold >= 100,
            message="emergency_throttle_threshold below 100 may cause frequent throttling",
            severity="warning",
        ),
        ValidationRule(
            name="memory_usage_limit-low",
            fields=("memory_usage_limit",),
            check=lambda config: config.memory_usage_limit >= 50,
            message="memory_usage_limit below 50MB may cause frequent optimizations",
            severity="warning",
        ),
        ValidationRule(
            name="min_node_separation-vs-radius",
            fields=("min_node_separation", "collision_radius"),
            check=lambda config: (
                config.min_node_separation >= config.collision_radius * 1.1
            ),
            message=(
                "min_node_separation is smaller than collision_radius x 1.1, "
                "nodes may visually overlap"
            ),
            severity="warning",
        ),
    ),
)


def _type_errors(key: str, value: Any) -> list[str]:
    if key in _OPTIONAL_TEXT_FIELDS:
        if value is None or isinstance(value, (str, int)) and not isinstance(value, bool):
            return []
        return [f"{key} must be a string id or None"]
    if key in _BOOL_FIELDS:
        if isinstance(value, bool):
            return []
        return [f"{key} must be a boolean"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return [f"{key} must be a number"]
    if not math.isfinite(float(value)):
        return [f"{key} must be finite"]
    if key in _INT_FIELDS and float(value) != int(value):
        return [f"{key} must be a whole number"]
    return []


def _coerce(key: str, value: Any) -> Any:
    if key in _OPTIONAL_TEXT_FIELDS:
        return None if value is None else str(value)
    if key in _BOOL_FIELDS:
        return bool(value)
    if key in _INT_FIELDS:
        return int(value)
    return float(value)


def _normalize_partial(
    partial: dict[str, Any] | None,
) -> tuple[dict[str, Any], list[str]]:
    normalized: dict[str, Any] = {}
    errors: list[str] = []
    if partial is None:
        return normalized, errors
    if not isinstance(partial, dict):
        return normalized, ["configuration update must be a mapping"]
    for raw_key, value in partial.items():
        key = normalize_key(raw_key)
        if key is None:
            errors.append(f"unknown configuration field: {raw_key}")
            continue
        field_errors = _type_errors(key, value)
        if field_errors:
            errors.extend(field_errors)
            continue
        normalized[key] = _coerce(key, value)
    return normalized, errors


def diff_for_transition(
    before: ForceLayoutConfig, after: ForceLayoutConfig
) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for name in FIELD_NAMES:
        old = getattr(before, name)
        new = getattr(after, name)
        if old != new:
            changes.append(FieldChange(name=name, old=old, new=new))
    return changes


def validate(
    partial: dict[str, Any] | None,
    *,
    base: ForceLayoutConfig = DEFAULT_FORCE_CONFIG,
    rules: RuleSet = DEFAULT_RULES,
) -> ValidationResult:
    """Check ``partial`` applied over ``base`` against every rule.

    Nothing is mutated. All violated constraints are reported, not just the
    first one.
    """
    normalized, errors = _normalize_partial(partial)
    candidate = replace(base, **normalized)
    warnings: list[str] = []
    touched = set(normalized)
    for rule in rules.rules:
        if not rule.always and not touched.intersection(rule.fields):
            continue
        if rule.check(candidate):
            continue
        if rule.severity == "warning":
            warnings.append(rule.message)
        else:
            errors.append(rule.message)

    valid = not errors
    return ValidationResult(
        valid=valid,
        errors=errors,
        warnings=warnings,
        config=candidate if valid else None,
        changes=diff_for_transition(base, candidate) if valid else [],
    )


def merge(
    base: ForceLayoutConfig,
    partial: dict[str, Any] | None,
    *,
    rules: RuleSet = DEFAULT_RULES,
) -> ValidationResult:
    """Validate ``partial`` over ``base``. One error rejects the whole merge."""
    return validate(partial, base=base, rules=rules)


def to_serializable(config: ForceLayoutConfig) -> dict[str, Any]:
    return {_camel(name): value for name, value in asdict(config).items()}


def from_serializable(
    payload: dict[str, Any],
    *,
    rules: RuleSet = DEFAULT_RULES,
) -> ForceLayoutConfig:
    result = validate(payload, base=DEFAULT_FORCE_CONFIG, rules=rules)
    if not result.valid or result.config is None:
        raise ConfigurationError(result.errors, result.warnings)
    return result.config


ConfigListener = Callable[
    [ForceLayoutConfig, ForceLayoutConfig, list[FieldChange], str], None
]


class ConfigModel:
    """Holds the live config and tells listeners about every change.

    Fields in :data:`GOVERNOR_FIELDS` belong to the performance governor and
    a host merge that touches them is refused.
    """

    def __init__(
        self,
        config: ForceLayoutConfig | None = None,
        *,
        rules: RuleSet = DEFAULT_RULES,
    ) -> None:
        self._lock = threading.RLock()
        self._config = config or DEFAULT_FORCE_CONFIG
        self.rules = rules
        self._listeners: list[ConfigListener] = []

    @property
    def current(self) -> ForceLayoutConfig:
        with self._lock:
            return self._config

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def validate(self, partial: dict[str, Any] | None) -> ValidationResult:
        return validate(partial, base=self.current, rules=self.rules)

    def try_merge(
        self,
        partial: dict[str, Any] | None,
        *,
        source: ChangeSource = "host",
    ) -> ValidationResult:
        with self._lock:
            ownership_errors = self._ownership_errors(partial, source)
            result = merge(self._config, partial, rules=self.rules)
            if ownership_errors:
                result = ValidationResult(
                    valid=False,
                    errors=ownership_errors + result.errors,
                    warnings=result.warnings,
                )
            if not result.valid or result.config is None:
                return result
            previous = self._config
            self._config = result.config
            listeners = list(self._listeners)
        self._notify(listeners, result.config, previous, result.changes, source)
        return result

    def merge(
        self,
        partial: dict[str, Any] | None,
        *,
        source: ChangeSource = "host",
    ) -> ValidationResult:
        result = self.try_merge(partial, source=source)
        if not result.valid:
            raise ConfigurationError(result.errors, result.warnings)
        return result

    def replace_all(
        self, config: ForceLayoutConfig, *, source: ChangeSource = "reset"
    ) -> list[FieldChange]:
        with self._lock:
            previous = self._config
            changes = diff_for_transition(previous, config)
            self._config = config
            listeners = list(self._listeners)
        self._notify(listeners, config, previous, changes, source)
        return changes

    def _ownership_errors(self, partial: Any, source: str) -> list[str]:
        if source != "host" or not isinstance(partial, dict):
            return []
        owned = sorted(
            key
            for key in (normalize_key(raw) for raw in partial)
            if key is not None and key in GOVERNOR_FIELDS
        )
        return [f"{key} is managed by the performance governor" for key in owned]

    @staticmethod
    def _notify(
        listeners: list[ConfigListener],
        config: ForceLayoutConfig,
        previous: ForceLayoutConfig,
        changes: list[FieldChange],
        source: str,
    ) -> None:
        # Called outside the lock; listeners may take their own locks.
        if not changes:
            return
        for listener in listeners:
            listener(config, previous, changes, source)
