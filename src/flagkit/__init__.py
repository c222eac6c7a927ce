from __future__ import annotations
import os
import json
import time
import logging
import datetime
import threading
import dill
import jsonschema
from collections.abc import Iterable, Mapping
from copy import copy, deepcopy
from hashlib import md5
from typing import Any, Literal, cast

from prometheus_client import Histogram


logger = logging.getLogger(__name__)

type FlagValue = bool | int | float | str
type Operator = Literal["in", "not_in"]
type DictConfig = dict[str, Any]

# Subject used for percentage rollouts when the context carries no user id.
# Every anonymous context therefore lands in the same bucket for a given flag.
ANONYMOUS_SUBJECT = "anonymous"

DEFAULT_ENVIRONMENT = "development"
DEFAULT_CONFIG_VERSION = "1.0.0"


def _hash_percent(s: str, seed: str = "") -> float:
    """
    Hashes the given string and seed to a float in the range [0, 100).

    Stability of this hash function is crucial. It decides which subjects fall
    inside a percentage rollout, so it must give the same answer across
    processes, hosts and python versions. Changing it reshuffles every rollout.
    """
    return (
        int.from_bytes(
            md5(f"{seed}:{s}".encode("utf-8")).digest(),
            byteorder="big",  # Being explicit to survive default changes.
            signed=False,  # Being explicit to survive default changes.
        )
        / (1 << 128)  # md5 hash is 128 bits long.
        * 100
    )


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _now_iso() -> str:
    return _utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_utc(t: datetime.datetime) -> datetime.datetime:
    if t.tzinfo is None:
        return t.replace(tzinfo=datetime.UTC)
    return t


def _parse_tz_time(s: str) -> datetime.datetime:
    """
    Parse the given ISO 8601 time string. A timezone is mandatory.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ValueError("timezone missing")
    return t


def _check_optional_str(name: str, value: Any):
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{name} must be a string or None, not {type(value).__name__}")


# Rules


class Rule:
    """
    Base of all targeting rules. Each subclass is one variant of the rule
    union, identified by its `type` tag in configuration documents.
    """

    __slots__ = ()
    type: str

    def to_dict(self) -> DictConfig:
        raise NotImplementedError  # pragma: no cover

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_dict()!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Rule):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(json.dumps(self.to_dict(), sort_keys=True))


class PercentageRule(Rule):
    __slots__ = ("percentage", "seed")
    type = "percentage"

    def __init__(self, percentage: float, seed: str | None = None):
        self.percentage = percentage
        self.seed = seed

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"type": self.type, "percentage": self.percentage}
        if self.seed is not None:
            d["seed"] = self.seed
        return d


class RoleRule(Rule):
    __slots__ = ("roles", "operator")
    type = "role"

    def __init__(self, roles: Iterable[str], operator: Operator = "in"):
        self.roles = frozenset(roles)
        self.operator = operator

    def to_dict(self) -> DictConfig:
        return {"type": self.type, "roles": sorted(self.roles), "operator": self.operator}


class UserRule(Rule):
    __slots__ = ("user_ids", "operator")
    type = "user"

    def __init__(self, user_ids: Iterable[str], operator: Operator = "in"):
        self.user_ids = frozenset(user_ids)
        self.operator = operator

    def to_dict(self) -> DictConfig:
        return {"type": self.type, "userIds": sorted(self.user_ids), "operator": self.operator}


class EnvironmentRule(Rule):
    __slots__ = ("environments", "operator")
    type = "environment"

    def __init__(self, environments: Iterable[str], operator: Operator = "in"):
        self.environments = frozenset(environments)
        self.operator = operator

    def to_dict(self) -> DictConfig:
        return {"type": self.type, "environments": sorted(self.environments), "operator": self.operator}


class DateRule(Rule):
    __slots__ = ("start", "end")
    type = "date"

    def __init__(self, start: datetime.datetime | None = None, end: datetime.datetime | None = None):
        self.start = start
        self.end = end

    def to_dict(self) -> DictConfig:
        d: DictConfig = {"type": self.type}
        if self.start is not None:
            d["start"] = self.start.isoformat()
        if self.end is not None:
            d["end"] = self.end.isoformat()
        return d


class GroupRule(Rule):
    __slots__ = ("groups", "operator")
    type = "group"

    def __init__(self, groups: Iterable[str], operator: Operator = "in"):
        self.groups = frozenset(groups)
        self.operator = operator

    def to_dict(self) -> DictConfig:
        return {"type": self.type, "groups": sorted(self.groups), "operator": self.operator}


def _compile_rule(r: DictConfig) -> Rule:
    """
    Build a rule object from an already validated rule document.
    """
    operator = r.get("operator", "in")
    match r["type"]:
        case "percentage":
            return PercentageRule(r["percentage"], r.get("seed"))
        case "role":
            return RoleRule(r["roles"], operator)
        case "user":
            return UserRule(r["userIds"], operator)
        case "environment":
            return EnvironmentRule(r["environments"], operator)
        case "date":
            start = _parse_tz_time(r["start"]) if "start" in r else None
            end = _parse_tz_time(r["end"]) if "end" in r else None
            return DateRule(start, end)
        case "group":
            return GroupRule(r["groups"], operator)
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


# Flags and configuration


class FeatureFlagConfig:
    """
    The definition of a single feature flag.

    When `enabled` is false the flag always resolves to `default_value`.
    Otherwise every rule must match for the flag to resolve to
    `rollout_value` (or `default_value` when no rollout value is set).
    """

    __slots__ = (
        "key",
        "name",
        "description",
        "enabled",
        "default_value",
        "rules",
        "rollout_value",
        "tags",
        "deprecated",
        "deprecation_date",
        "owner",
        "created_at",
        "updated_at",
    )
    key: str
    name: str
    description: str | None
    enabled: bool
    default_value: FlagValue
    rules: tuple[Rule, ...]
    rollout_value: FlagValue | None
    tags: tuple[str, ...]
    deprecated: bool
    deprecation_date: str | None
    owner: str | None
    created_at: str
    updated_at: str

    def __init__(
        self,
        key: str,
        default_value: FlagValue,
        *,
        name: str | None = None,
        description: str | None = None,
        enabled: bool = False,
        rules: Iterable[Rule] = (),
        rollout_value: FlagValue | None = None,
        tags: Iterable[str] = (),
        deprecated: bool = False,
        deprecation_date: str | None = None,
        owner: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ):
        now = _now_iso()
        self.key = key
        self.name = name if name is not None else key
        self.description = description
        self.enabled = enabled
        self.default_value = default_value
        self.rules = tuple(rules)
        self.rollout_value = rollout_value
        self.tags = tuple(tags)
        self.deprecated = deprecated
        self.deprecation_date = deprecation_date
        self.owner = owner
        self.created_at = created_at or now
        self.updated_at = updated_at or now

    def _replace(self, **changes: Any) -> FeatureFlagConfig:
        f = copy(self)
        for k, v in changes.items():
            setattr(f, k, v)
        return f

    def to_dict(self) -> DictConfig:
        d: DictConfig = {
            "key": self.key,
            "name": self.name,
            "enabled": self.enabled,
            "defaultValue": self.default_value,
            "rules": [r.to_dict() for r in self.rules],
            "tags": list(self.tags),
            "deprecated": self.deprecated,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        optional = {
            "description": self.description,
            "rolloutValue": self.rollout_value,
            "deprecationDate": self.deprecation_date,
            "owner": self.owner,
        }
        d.update((k, v) for k, v in optional.items() if v is not None)
        return d

    def __repr__(self) -> str:
        return f"FeatureFlagConfig(key={self.key!r}, enabled={self.enabled!r})"


class FeatureFlagsConfig:
    """
    A whole configuration document. Treat instances as immutable: the helpers
    in this module return new configs instead of modifying existing ones, so a
    config can be shared between threads without locking.
    """

    __slots__ = ("flags", "global_rules", "environments", "metadata", "_by_key")
    flags: tuple[FeatureFlagConfig, ...]
    # Validated and kept, but not evaluated. Reserved for cross-flag
    # preconditions.
    global_rules: tuple[Rule, ...]
    environments: dict[str, dict[str, dict[str, FlagValue]]]
    metadata: dict[str, str]
    _by_key: dict[str, FeatureFlagConfig]

    def __init__(
        self,
        flags: Iterable[FeatureFlagConfig] = (),
        global_rules: Iterable[Rule] = (),
        environments: Mapping[str, Any] | None = None,
        metadata: Mapping[str, str] | None = None,
    ):
        self.flags = tuple(flags)
        self.global_rules = tuple(global_rules)
        self.environments = deepcopy(dict(environments or {}))
        self.metadata = {"version": DEFAULT_CONFIG_VERSION, "lastUpdated": _now_iso(), **(metadata or {})}
        self._by_key = {}
        for flag in self.flags:
            # First definition wins when keys are duplicated.
            self._by_key.setdefault(flag.key, flag)

    @staticmethod
    def from_bytes(b: bytes) -> FeatureFlagsConfig:
        obj = dill.loads(b)
        assert isinstance(obj, FeatureFlagsConfig)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    def get(self, key: str) -> FeatureFlagConfig | None:
        return self._by_key.get(key)

    def keys(self) -> list[str]:
        return list(self._by_key)

    def _replace(self, **changes: Any) -> FeatureFlagsConfig:
        return FeatureFlagsConfig(
            flags=changes.get("flags", self.flags),
            global_rules=changes.get("global_rules", self.global_rules),
            environments=changes.get("environments", self.environments),
            metadata=changes.get("metadata", self.metadata),
        )

    def to_dict(self) -> DictConfig:
        return {
            "flags": [f.to_dict() for f in self.flags],
            "globalRules": [r.to_dict() for r in self.global_rules],
            "environments": deepcopy(self.environments),
            "metadata": dict(self.metadata),
        }


# Validation


class Violation:
    """
    A single problem found in a configuration document. `path` is the dotted
    location of the offending value, e.g. `flags.0.rules.1.percentage`.
    """

    __slots__ = ("path", "message")

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message

    def __str__(self) -> str:
        return f"{self.path or '<root>'}: {self.message}"

    def __repr__(self) -> str:
        return f"Violation({self.path!r}, {self.message!r})"


class ConfigValidationError(ValueError):
    """
    Raised when a configuration document does not conform to the schema.
    Carries every violation found, not just the first one.
    """

    def __init__(self, what: str, violations: list[Violation]):
        self.violations = violations
        super().__init__(f"{what} validation failed: " + "; ".join(str(v) for v in violations))


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)

with open(os.path.join(os.path.dirname(__file__), "default_flags.json")) as f:
    _default_document = json.load(f)

_config_validator = jsonschema.Draft202012Validator(_config_schema)
_flag_validator = jsonschema.Draft202012Validator({"$ref": "#/$defs/flag", "$defs": _config_schema["$defs"]})


def _join_path(*parts: Any) -> str:
    return ".".join(str(p) for p in parts if p != "")


def _schema_violations(validator: jsonschema.Draft202012Validator, raw: Any, prefix: str = "") -> list[Violation]:
    return [Violation(_join_path(prefix, *e.absolute_path), e.message) for e in validator.iter_errors(raw)]


def _time_violation(value: Any, path: str, violations: list[Violation]) -> datetime.datetime | None:
    # Wrong types are reported by the schema pass.
    if not isinstance(value, str):
        return None
    try:
        return _parse_tz_time(value)
    except ValueError as e:
        violations.append(Violation(path, f"{value!r} is not an ISO 8601 timestamp with timezone ({e})"))
        return None


def _rule_time_violations(rules: Any, prefix: str, violations: list[Violation]):
    if not isinstance(rules, list):
        return
    for i, r in enumerate(rules):
        if not isinstance(r, dict) or r.get("type") != "date":
            continue
        start = _time_violation(r.get("start"), _join_path(prefix, i, "start"), violations)
        end = _time_violation(r.get("end"), _join_path(prefix, i, "end"), violations)
        if start is not None and end is not None and start > end:
            violations.append(Violation(_join_path(prefix, i), "start must not be after end"))


def _flag_time_violations(raw: Any, prefix: str, violations: list[Violation]):
    if not isinstance(raw, dict):
        return
    for field in ("deprecationDate", "createdAt", "updatedAt"):
        _time_violation(raw.get(field), _join_path(prefix, field), violations)
    _rule_time_violations(raw.get("rules"), _join_path(prefix, "rules"), violations)


def _raise_if_invalid(what: str, violations: list[Violation]):
    if not violations:
        return
    logger.error(
        "invalid %s, %d violation(s):\n%s",
        what,
        len(violations),
        "\n".join(f"  {v}" for v in violations),
    )
    raise ConfigValidationError(what, violations)


def _compile_flag(f: DictConfig) -> FeatureFlagConfig:
    return FeatureFlagConfig(
        key=f["key"],
        default_value=f["defaultValue"],
        name=f.get("name"),
        description=f.get("description"),
        enabled=f.get("enabled", False),
        rules=[_compile_rule(r) for r in f.get("rules", [])],
        rollout_value=f.get("rolloutValue"),
        tags=f.get("tags", []),
        deprecated=f.get("deprecated", False),
        deprecation_date=f.get("deprecationDate"),
        owner=f.get("owner"),
        created_at=f.get("createdAt"),
        updated_at=f.get("updatedAt"),
    )


def validate_feature_flag_config(raw: Any) -> FeatureFlagConfig:
    """
    Validate a single flag document and build the flag from it. Raises
    ConfigValidationError listing every violation found.
    """
    violations = _schema_violations(_flag_validator, raw)
    _flag_time_violations(raw, "", violations)
    _raise_if_invalid("feature flag configuration", violations)
    return _compile_flag(raw)


def validate_feature_flags_config(raw: Any) -> FeatureFlagsConfig:
    """
    Validate a configuration document and build the config from it. Raises
    ConfigValidationError listing every violation found.
    """
    violations = _schema_violations(_config_validator, raw)
    if isinstance(raw, dict):
        if isinstance(raw.get("flags"), list):
            for i, f in enumerate(raw["flags"]):
                _flag_time_violations(f, _join_path("flags", i), violations)
        _rule_time_violations(raw.get("globalRules"), "globalRules", violations)
        if isinstance(raw.get("metadata"), dict):
            _time_violation(raw["metadata"].get("lastUpdated"), "metadata.lastUpdated", violations)
    _raise_if_invalid("feature flags configuration", violations)

    return FeatureFlagsConfig(
        flags=[_compile_flag(f) for f in raw["flags"]],
        global_rules=[_compile_rule(r) for r in raw.get("globalRules", [])],
        environments=raw.get("environments", {}),
        metadata=raw.get("metadata", {}),
    )


# Evaluation context


class UserContext:
    """
    Identity of the subject a flag is evaluated for, as resolved by the
    authentication layer. `metadata` is carried but not used by any rule.
    """

    __slots__ = ("id", "email", "role", "groups", "metadata")

    def __init__(
        self,
        id: str | None = None,
        email: str | None = None,
        role: str | None = None,
        groups: Iterable[str] = (),
        metadata: Mapping[str, Any] | None = None,
    ):
        _check_optional_str("id", id)
        _check_optional_str("email", email)
        _check_optional_str("role", role)
        if isinstance(groups, str):
            raise TypeError("groups must be an iterable of strings, not a string")
        groups = tuple(groups)
        if not all(isinstance(g, str) for g in groups):
            raise TypeError("groups must only contain strings")
        self.id = id
        self.email = email
        self.role = role
        self.groups = groups
        self.metadata = dict(metadata or {})

    def __repr__(self) -> str:
        return f"UserContext(id={self.id!r}, role={self.role!r}, groups={self.groups!r})"


class EnvironmentContext:
    __slots__ = ("environment", "version", "build_id")

    def __init__(self, environment: str = DEFAULT_ENVIRONMENT, version: str | None = None, build_id: str | None = None):
        if not isinstance(environment, str):
            raise TypeError(f"environment must be a string, not {type(environment).__name__}")
        _check_optional_str("version", version)
        _check_optional_str("build_id", build_id)
        self.environment = environment
        self.version = version
        self.build_id = build_id

    def __repr__(self) -> str:
        return f"EnvironmentContext(environment={self.environment!r})"


class EvaluationContext:
    """
    Everything rules are evaluated against: who (user), where (environment)
    and when (timestamp). Naive timestamps are taken to be UTC.
    """

    __slots__ = ("user", "environment", "timestamp")
    _fields = ("user", "environment", "timestamp")

    def __init__(
        self,
        environment: EnvironmentContext | str = DEFAULT_ENVIRONMENT,
        user: UserContext | None = None,
        timestamp: datetime.datetime | None = None,
    ):
        if isinstance(environment, str):
            environment = EnvironmentContext(environment)
        if not isinstance(environment, EnvironmentContext):
            raise TypeError(f"environment must be an EnvironmentContext, not {type(environment).__name__}")
        if user is not None and not isinstance(user, UserContext):
            raise TypeError(f"user must be a UserContext or None, not {type(user).__name__}")
        if timestamp is None:
            timestamp = _utcnow()
        if not isinstance(timestamp, datetime.datetime):
            raise TypeError(f"timestamp must be a datetime, not {type(timestamp).__name__}")
        self.environment = environment
        self.user = user
        self.timestamp = _as_utc(timestamp)

    def merged(self, **fields: Any) -> EvaluationContext:
        """
        Return a new context with the given fields replaced.
        """
        unknown = fields.keys() - set(self._fields)
        if unknown:
            raise TypeError(f"unknown context fields: {', '.join(sorted(unknown))}")
        current = {name: getattr(self, name) for name in self._fields}
        return EvaluationContext(**{**current, **fields})

    def __repr__(self) -> str:
        return f"EvaluationContext(environment={self.environment!r}, user={self.user!r}, timestamp={self.timestamp!r})"


def current_environment() -> str:
    """
    The deployment environment of this process, from FLAGKIT_ENV.
    """
    return os.environ.get("FLAGKIT_ENV") or DEFAULT_ENVIRONMENT


def create_server_evaluation_context(user: UserContext | None = None, environment: str | None = None) -> EvaluationContext:
    """
    Build an evaluation context for server side evaluation from the process
    environment and the current time.
    """
    return EvaluationContext(
        environment=EnvironmentContext(
            environment=environment or current_environment(),
            version=os.environ.get("FLAGKIT_VERSION"),
            build_id=os.environ.get("FLAGKIT_BUILD_ID"),
        ),
        user=user,
        timestamp=_utcnow(),
    )


# Rule evaluation


def _membership(value: str | None, values: frozenset[str], operator: str) -> bool:
    # An absent value is not a member of any set.
    present = value is not None and value in values
    match operator:
        case "in":
            return present
        case "not_in":
            return not present
        case _:
            return False


def evaluate_rule(rule: Rule, context: EvaluationContext, flag_key: str = "") -> bool:
    """
    Decide whether a single rule matches the context. Never raises for an
    unknown rule; it simply does not match.

    flag_key seeds percentage rules that do not carry a seed of their own, so
    different flags bucket the same subject independently.
    """
    user = context.user
    match rule:
        case PercentageRule():
            if rule.percentage <= 0:
                return False
            if rule.percentage >= 100:
                return True
            subject = user.id if user is not None and user.id is not None else ANONYMOUS_SUBJECT
            return _hash_percent(subject, seed=rule.seed or flag_key) < rule.percentage
        case RoleRule():
            return _membership(user.role if user is not None else None, rule.roles, rule.operator)
        case UserRule():
            return _membership(user.id if user is not None else None, rule.user_ids, rule.operator)
        case EnvironmentRule():
            return _membership(context.environment.environment, rule.environments, rule.operator)
        case DateRule():
            now = _as_utc(context.timestamp)
            if rule.start is not None and now < rule.start:
                return False
            if rule.end is not None and now > rule.end:
                return False
            return True
        case GroupRule():
            groups = user.groups if user is not None else ()
            overlap = not rule.groups.isdisjoint(groups)
            match rule.operator:
                case "in":
                    return overlap
                case "not_in":
                    return not overlap
                case _:
                    return False
        case _:
            logger.debug("unknown rule %r treated as not matching", rule)
            return False


# Flag evaluation


class FlagEvaluation:
    """
    The result of evaluating a flag.
    """

    __slots__ = (
        "flag",
        "value",
        "default",
        "reason",
        "rule_index",
        "timestamp",
    )
    flag: str
    value: FlagValue
    default: FlagValue
    reason: Literal["not_found", "disabled", "rules_matched", "rule_failed"]
    # Index of the first rule that did not match, -1 otherwise.
    rule_index: int
    timestamp: datetime.datetime


_prom_eval_duration = Histogram(
    "flagkit_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-6, 1e-5, 1e-4, 1e-3, 1e-2, 1e-1],
    labelnames=["flag", "reason"],
)


def detailed_evaluate_flag(key: str, context: EvaluationContext, config: FeatureFlagsConfig) -> FlagEvaluation:
    """
    Evaluate the given flag and report why it resolved to its value.
    """
    start = time.perf_counter()
    e = FlagEvaluation()
    e.flag = key
    e.rule_index = -1
    e.timestamp = context.timestamp

    flag = config.get(key)
    if flag is None:
        logger.warning("feature flag %r not found", key)
        e.default = e.value = False
        e.reason = "not_found"
    elif not flag.enabled:
        e.default = e.value = flag.default_value
        e.reason = "disabled"
    else:
        if flag.deprecated:
            logger.warning("feature flag %r is deprecated", key)
        e.default = flag.default_value
        for i, rule in enumerate(flag.rules):
            if not evaluate_rule(rule, context, flag.key):
                e.value = flag.default_value
                e.reason = "rule_failed"
                e.rule_index = i
                break
        else:
            e.value = flag.rollout_value if flag.rollout_value is not None else flag.default_value
            e.reason = "rules_matched"

    # Only keys present in the config become label values.
    if e.reason != "not_found":
        _prom_eval_duration.labels(flag=key, reason=e.reason).observe(time.perf_counter() - start)
    return e


def evaluate_flag(key: str, context: EvaluationContext, config: FeatureFlagsConfig) -> FlagValue:
    """
    Resolve the value of a flag. A flag missing from the config resolves to
    False.
    """
    return detailed_evaluate_flag(key, context, config).value


def evaluate_flags(keys: Iterable[str], context: EvaluationContext, config: FeatureFlagsConfig) -> dict[str, FlagValue]:
    return {key: evaluate_flag(key, context, config) for key in keys}


def evaluate_all_flags(context: EvaluationContext, config: FeatureFlagsConfig) -> dict[str, FlagValue]:
    return evaluate_flags(config.keys(), context, config)


def is_feature_enabled(key: str, context: EvaluationContext, config: FeatureFlagsConfig) -> bool:
    return bool(evaluate_flag(key, context, config))


def get_feature_flag_value[T](key: str, context: EvaluationContext, config: FeatureFlagsConfig) -> T:
    """
    Resolve the value of a flag as the type the caller expects. The value is
    not checked or coerced; asking for the wrong type is a caller error.
    """
    return cast(T, evaluate_flag(key, context, config))


# Loading


def apply_environment_overrides(config: FeatureFlagsConfig, environment: str) -> FeatureFlagsConfig:
    """
    Return a config where flags overridden for the given environment have
    their default value replaced. Rules are left untouched, so overrides only
    change what a flag falls back to.
    """
    overrides = config.environments.get(environment, {}).get("overrides", {})
    if not overrides:
        return config
    now = _now_iso()
    flags = []
    for flag in config.flags:
        if flag.key in overrides:
            flag = flag._replace(default_value=overrides[flag.key], updated_at=now)
        flags.append(flag)
    unknown = overrides.keys() - set(config.keys())
    if unknown:
        logger.warning("overrides for %s reference unknown flags: %s", environment, ", ".join(sorted(unknown)))
    return config._replace(flags=flags)


def default_flags_document() -> DictConfig:
    """
    A fresh copy of the bundled default configuration document.
    """
    return deepcopy(_default_document)


def load_feature_flags(raw: Any = None, environment: str | None = None) -> FeatureFlagsConfig:
    """
    Validate the configuration document (the bundled defaults when raw is
    None) and apply the overrides of the given deployment environment
    (current_environment() when None).
    """
    if raw is None:
        raw = default_flags_document()
    config = validate_feature_flags_config(raw)
    return apply_environment_overrides(config, environment or current_environment())


# Configuration helpers


def get_feature_flag_by_key(key: str, config: FeatureFlagsConfig) -> FeatureFlagConfig | None:
    return config.get(key)


def get_feature_flags_by_tag(tag: str, config: FeatureFlagsConfig) -> list[FeatureFlagConfig]:
    return [f for f in config.flags if tag in f.tags]


def get_active_feature_flags(config: FeatureFlagsConfig) -> list[FeatureFlagConfig]:
    return [f for f in config.flags if f.enabled and not f.deprecated]


def get_deprecated_feature_flags(config: FeatureFlagsConfig) -> list[FeatureFlagConfig]:
    return [f for f in config.flags if f.deprecated]


def _touched_metadata(config: FeatureFlagsConfig) -> dict[str, str]:
    return {**config.metadata, "lastUpdated": _now_iso()}


def add_feature_flag(flag: FeatureFlagConfig | DictConfig, config: FeatureFlagsConfig) -> FeatureFlagsConfig:
    """
    Return a new config with the given flag appended. The flag is validated
    first, whether given as a document or as a FeatureFlagConfig.
    """
    raw = flag.to_dict() if isinstance(flag, FeatureFlagConfig) else flag
    validated = validate_feature_flag_config(raw)
    if config.get(validated.key) is not None:
        raise ValueError(f"Flag {validated.key} already exists in the config")
    return config._replace(flags=[*config.flags, validated], metadata=_touched_metadata(config))


def update_feature_flag(key: str, updates: Mapping[str, Any], config: FeatureFlagsConfig) -> FeatureFlagsConfig:
    """
    Return a new config where the flag with the given key has the given
    document fields replaced and updatedAt refreshed. The updated flag is
    validated again.
    """
    for i, flag in enumerate(config.flags):
        if flag.key == key:
            break
    else:
        raise ValueError(f"Flag {key} does not exist in the config")

    updated = validate_feature_flag_config({**flag.to_dict(), **updates, "updatedAt": _now_iso()})
    if updated.key != key and config.get(updated.key) is not None:
        raise ValueError(f"Flag {updated.key} already exists in the config")
    flags = list(config.flags)
    flags[i] = updated
    return config._replace(flags=flags, metadata=_touched_metadata(config))


def remove_feature_flag(key: str, config: FeatureFlagsConfig) -> FeatureFlagsConfig:
    return config._replace(
        flags=[f for f in config.flags if f.key != key],
        metadata=_touched_metadata(config),
    )


# Cached evaluation


class FeatureFlagsEvaluator:
    """
    Evaluates flags for one context and remembers the results. Results are
    kept until clear_cache() or update_context() is called. The evaluator is
    thread-safe.
    """

    def __init__(self, context: EvaluationContext, config: FeatureFlagsConfig):
        self._mu = threading.RLock()
        self._context = context
        self._config = config
        self._cache: dict[str, FlagValue] = {}

    @property
    def context(self) -> EvaluationContext:
        with self._mu:
            return self._context

    @property
    def config(self) -> FeatureFlagsConfig:
        return self._config

    def evaluate(self, key: str) -> FlagValue:
        with self._mu:
            if key in self._cache:
                return self._cache[key]
            value = evaluate_flag(key, self._context, self._config)
            self._cache[key] = value
            return value

    def is_enabled(self, key: str) -> bool:
        return bool(self.evaluate(key))

    def get_value[T](self, key: str) -> T:
        return cast(T, self.evaluate(key))

    def evaluate_all(self) -> dict[str, FlagValue]:
        return {key: self.evaluate(key) for key in self._config.keys()}

    def clear_cache(self):
        with self._mu:
            self._cache.clear()

    def update_context(self, **fields: Any):
        """
        Replace the given context fields (user, environment, timestamp) and
        drop every cached result.
        """
        with self._mu:
            self._context = self._context.merged(**fields)
            self._cache.clear()
