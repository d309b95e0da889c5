from __future__ import annotations
import re
import enum
import inspect
import asyncio
import logging
import datetime
import os
import time
import json
import jsonschema
import threading
import contextvars
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping
from collections import defaultdict
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any, Literal
from hashlib import md5

from prometheus_client import Counter, Histogram


logger = logging.getLogger(__name__)

type AttributeValue = None | str | bool | int | float | list[AttributeValue] | tuple[AttributeValue, ...]
type Attributes = dict[str, AttributeValue]
type DictConfig = dict[str, Any]
type Reason = Literal["STATIC", "DEFAULT", "TARGETING_MATCH", "SPLIT", "DISABLED", "ERROR"]


def _hash_percent(s: str, seed: str = "") -> float:
    """
    Hashes the given string and seed to a float in the range [0, 100).

    This is not the most efficient hash function but it's stable.
    Stability of this hash function is crucial. It's used to bucket targeting
    keys into percentage rollouts so the same subject lands in the same bucket
    across processes, python versions and restarts.
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


def merge_flag_configs(*configs: DictConfig) -> DictConfig:
    """
    Merge the given provider configs into a single config. Order is not
    important. Config values are shallow copied.

    This merge function is naiive and does not check for validity of keys
    and types. The canonical way of ensuring valid config is by loading it
    with InMemoryProvider.from_dict.
    """
    merged = defaultdict(dict)
    for config in configs:
        for key, value in config.items():
            d = merged[key]
            intersection = d.keys() & value.keys()
            if intersection:
                raise ValueError(f"Duplicate keys: {intersection}")
            d.update(value)
    return merged


def _timedelta_from_human_duration(s: str) -> datetime.timedelta:
    """
    Parse the given human readable duration string such as "1m 30s" or
    "250ms" and return the matching timedelta.
    """
    m = re.match(
        r"^\s*(?:(?P<hours>\d+)\s*h)?\s*(?:(?P<minutes>\d+)\s*m(?!s))?\s*(?:(?P<seconds>\d+)\s*s)?\s*(?:(?P<milliseconds>\d+)\s*ms)?\s*$",
        s,
    )
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid duration {s!r}")
    return datetime.timedelta(
        hours=int(m.group("hours") or 0),
        minutes=int(m.group("minutes") or 0),
        seconds=int(m.group("seconds") or 0),
        milliseconds=int(m.group("milliseconds") or 0),
    )


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)


def _validate_config(instance: Any, definition: str | None = None):
    """
    Validate instance against the packaged config schema, or against one of
    its $defs when definition is given.
    """
    schema = _config_schema
    if definition is not None:
        schema = {
            "$schema": _config_schema["$schema"],
            "$defs": _config_schema["$defs"],
            "$ref": f"#/$defs/{definition}",
        }
    jsonschema.validate(instance, schema)


# Errors


class FeaClientError(Exception):
    """
    Base class of all errors raised by feaclient.
    """


class RuleTypeMismatchError(FeaClientError, TypeError):
    """
    A targeting rule was applied to an attribute of an incompatible type, e.g.
    GREATER_THAN on a string. Only raised when rules are evaluated in strict
    mode.
    """

    def __init__(self, rule: TargetingRule, actual: Any):
        super().__init__(f"{rule.operator.name} on attribute {rule.attribute!r} cannot compare {type(actual).__name__} with {type(rule.value).__name__}")
        self.rule = rule
        self.actual = actual


class HookError(FeaClientError):
    """
    A hook failed while running one of its stages.
    """

    def __init__(self, hook_name: str, stage: HookStage, message: str):
        super().__init__(message)
        self.hook_name = hook_name
        self.stage = stage
        # Outcomes of every hook invoked in the stage up to and including the
        # failing one. Set by HookManager before the error is raised.
        self.outcomes: list[HookOutcome] = []


class HookExecutionError(HookError):
    def __init__(self, hook_name: str, stage: HookStage, cause: BaseException):
        super().__init__(hook_name, stage, f"hook {hook_name} failed in {stage.value} stage: {cause!r}")
        self.cause = cause
        self.__cause__ = cause


class HookTimeoutError(HookError, TimeoutError):
    def __init__(self, hook_name: str, stage: HookStage, timeout: datetime.timedelta):
        super().__init__(hook_name, stage, f"hook {hook_name} timed out after {timeout.total_seconds()}s in {stage.value} stage")
        self.timeout = timeout


class ErrorCode:
    PROVIDER_NOT_READY: str = "PROVIDER_NOT_READY"
    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    TYPE_MISMATCH: str = "TYPE_MISMATCH"
    GENERAL: str = "GENERAL"


class ProviderError(FeaClientError):
    """
    Raised by providers when they are not ready or fail to resolve a flag.
    """

    def __init__(self, code: str, message: str, details: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ExtensionError(FeaClientError):
    pass


# Attribute values


def _validate_attribute_value(v: Any):
    if isinstance(v, (list, tuple)):
        for i in v:
            _validate_attribute_value(i)
    elif not isinstance(v, (str, int, float, bool, type(None))):
        raise TypeError(f"attribute value must be a string, int, float, bool, list, None, not {type(v).__name__}")


def validate_attributes(attributes: Mapping[str, AttributeValue]):
    """
    Raise TypeError unless attributes is a mapping of string keys to
    attribute values.
    """
    if not isinstance(attributes, Mapping):
        raise TypeError(f"attributes must be a mapping, not {type(attributes).__name__}")
    for k, v in attributes.items():
        if not isinstance(k, str):
            raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
        _validate_attribute_value(v)


def _is_numeric(v: Any) -> bool:
    # bool is an int subclass but never counts as a number here.
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _strict_equals(a: Any, b: Any) -> bool:
    """
    Type sensitive equality. Unlike ==, True never equals 1 and 1 never
    equals 1.0. Lists and tuples are compared element wise.
    """
    a_seq = isinstance(a, (list, tuple))
    b_seq = isinstance(b, (list, tuple))
    if a_seq or b_seq:
        return a_seq and b_seq and len(a) == len(b) and all(_strict_equals(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


def _canonical_str(v: Any) -> str:
    match v:
        case None:
            return "null"
        case bool():
            return "true" if v else "false"
        case list() | tuple():
            return "[" + ", ".join(_canonical_str(i) for i in v) + "]"
        case _:
            return str(v)


def _freeze(v: Any) -> Any:
    if isinstance(v, (list, tuple)):
        return tuple(_freeze(i) for i in v)
    return v


# Targeting


class TargetingOperator(enum.Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    IN_LIST = "IN_LIST"
    NOT_IN_LIST = "NOT_IN_LIST"


class TargetingRule:
    """
    A single predicate over one context attribute. Rules are immutable and
    their evaluation is pure.

    A missing attribute, or one set to None, never matches. Rules that can't
    compare the attribute with their value (ordering on non numbers, list
    membership against a non list) don't match either, unless evaluated in
    strict mode in which case RuleTypeMismatchError is raised.
    """

    __slots__ = ("attribute", "operator", "value", "metadata")
    attribute: str
    operator: TargetingOperator
    value: AttributeValue
    metadata: Mapping[str, Any]

    def __init__(
        self,
        attribute: str,
        operator: TargetingOperator | str,
        value: AttributeValue,
        metadata: Mapping[str, Any] | None = None,
    ):
        if not isinstance(attribute, str) or not attribute:
            raise ValueError("rule attribute must be a non-empty string")
        if isinstance(operator, str):
            try:
                operator = TargetingOperator[operator.upper()]
            except KeyError:
                raise ValueError(f"unknown operator {operator!r}") from None
        elif not isinstance(operator, TargetingOperator):
            raise TypeError(f"operator must be a TargetingOperator, not {type(operator).__name__}")
        _validate_attribute_value(value)
        object.__setattr__(self, "attribute", attribute)
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "value", _freeze(value))
        object.__setattr__(self, "metadata", MappingProxyType(dict(metadata or {})))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other):
        if not isinstance(other, TargetingRule):
            return NotImplemented
        return (
            self.attribute == other.attribute
            and self.operator is other.operator
            and _strict_equals(self.value, other.value)
            and dict(self.metadata) == dict(other.metadata)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self):
        return f"TargetingRule({self.attribute!r}, {self.operator.name}, {self.value!r})"

    @staticmethod
    def from_dict(d: DictConfig) -> TargetingRule:
        _validate_config(d, "rule")
        return TargetingRule(d["attribute"], d["operator"], d["value"], d.get("metadata"))

    def to_dict(self) -> DictConfig:
        d: DictConfig = {
            "attribute": self.attribute,
            "operator": self.operator.name,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
        }
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d

    @staticmethod
    def equals(attribute: str, value: AttributeValue) -> TargetingRule:
        return TargetingRule(attribute, TargetingOperator.EQUALS, value)

    @staticmethod
    def not_equals(attribute: str, value: AttributeValue) -> TargetingRule:
        return TargetingRule(attribute, TargetingOperator.NOT_EQUALS, value)

    @staticmethod
    def contains(attribute: str, value: str) -> TargetingRule:
        return TargetingRule(attribute, TargetingOperator.CONTAINS, value)

    @staticmethod
    def in_list(attribute: str, values: Iterable[AttributeValue]) -> TargetingRule:
        return TargetingRule(attribute, TargetingOperator.IN_LIST, list(values))

    def evaluate(self, context: Mapping[str, AttributeValue], strict: bool = False) -> bool:
        """
        Evaluate the rule against the given attributes.
        """
        actual = context.get(self.attribute)
        if actual is None:
            return False
        expected = self.value
        op = self.operator
        match op:
            case TargetingOperator.EQUALS:
                return _strict_equals(actual, expected)
            case TargetingOperator.NOT_EQUALS:
                return not _strict_equals(actual, expected)
            case TargetingOperator.CONTAINS:
                return _canonical_str(expected) in _canonical_str(actual)
            case TargetingOperator.NOT_CONTAINS:
                return _canonical_str(expected) not in _canonical_str(actual)
            case TargetingOperator.STARTS_WITH:
                return _canonical_str(actual).startswith(_canonical_str(expected))
            case TargetingOperator.ENDS_WITH:
                return _canonical_str(actual).endswith(_canonical_str(expected))
            case TargetingOperator.GREATER_THAN | TargetingOperator.LESS_THAN:
                if not (_is_numeric(actual) and _is_numeric(expected)):
                    if strict:
                        raise RuleTypeMismatchError(self, actual)
                    return False
                if op is TargetingOperator.GREATER_THAN:
                    return actual > expected
                return actual < expected
            case TargetingOperator.IN_LIST | TargetingOperator.NOT_IN_LIST:
                if not isinstance(expected, tuple):
                    if strict:
                        raise RuleTypeMismatchError(self, actual)
                    return False
                found = any(_strict_equals(actual, v) for v in expected)
                return found if op is TargetingOperator.IN_LIST else not found
            case _:  # pragma: no cover
                assert False, "unreachable"  # pragma: no cover


class EvaluationContext:
    """
    Immutable set of attributes describing the subject of an evaluation,
    optionally chained to a parent context, plus an ordered list of targeting
    rules.

    Attribute lookups resolve to the nearest context in the chain that
    defines the key, so a child always shadows its ancestors. Children hold
    their parent but parents never know about their children.

    List values are stored as tuples so that nothing reachable from a context
    can be mutated.
    """

    __slots__ = ("attributes", "parent", "rules")
    attributes: Mapping[str, AttributeValue]
    parent: EvaluationContext | None
    rules: tuple[TargetingRule, ...]

    def __init__(
        self,
        attributes: Mapping[str, AttributeValue] | None = None,
        parent: EvaluationContext | None = None,
        rules: Iterable[TargetingRule] = (),
    ):
        attributes = {} if attributes is None else attributes
        validate_attributes(attributes)
        if parent is not None and not isinstance(parent, EvaluationContext):
            raise TypeError(f"parent must be an EvaluationContext, not {type(parent).__name__}")
        rules = tuple(rules or ())
        for r in rules:
            if not isinstance(r, TargetingRule):
                raise TypeError(f"rules must be TargetingRules, not {type(r).__name__}")
        object.__setattr__(self, "attributes", MappingProxyType({k: _freeze(v) for k, v in attributes.items()}))
        object.__setattr__(self, "parent", parent)
        object.__setattr__(self, "rules", rules)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other):
        if not isinstance(other, EvaluationContext):
            return NotImplemented
        return dict(self.attributes) == dict(other.attributes) and self.rules == other.rules and self.parent == other.parent

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self):
        return f"EvaluationContext({dict(self.attributes)!r}, rules={list(self.rules)!r}, parent={self.parent!r})"

    @staticmethod
    def from_dict(d: DictConfig) -> EvaluationContext:
        _validate_config(d, "context")
        return EvaluationContext(
            d.get("attributes", {}),
            rules=[TargetingRule.from_dict(r) for r in d.get("rules", [])],
        )

    def _chain(self) -> list[EvaluationContext]:
        """
        This context followed by its ancestors, nearest first.
        """
        chain = []
        node: EvaluationContext | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain

    def get_attribute(self, key: str, default: Any = None) -> AttributeValue | Any:
        for node in self._chain():
            if key in node.attributes:
                return node.attributes[key]
        return default

    def has_attribute(self, key: str) -> bool:
        return any(key in node.attributes for node in self._chain())

    def resolved_attributes(self) -> Attributes:
        """
        Flatten the whole chain into a single dict, nearest context winning.
        """
        resolved: Attributes = {}
        for node in reversed(self._chain()):
            resolved.update(node.attributes)
        return resolved

    def merge(self, other: EvaluationContext) -> EvaluationContext:
        """
        Return a new standalone context (no parent) holding the flattened
        attributes of both contexts, with other taking precedence, and the
        rules of self followed by the rules of other.
        """
        attributes = self.resolved_attributes()
        attributes.update(other.resolved_attributes())
        return EvaluationContext(attributes, rules=self.rules + other.rules)

    def create_child(
        self,
        attributes: Mapping[str, AttributeValue] | None = None,
        rules: Iterable[TargetingRule] | None = None,
    ) -> EvaluationContext:
        return EvaluationContext(attributes, parent=self, rules=rules or ())

    def evaluate_rules(self, strict: bool = False) -> bool:
        """
        Evaluate the rules of every context in the chain. Ancestors are
        evaluated first and any failing rule short-circuits to False. Own
        rules see the resolved attributes of the whole chain. A context
        without rules passes.
        """
        if self.parent is not None and not self.parent.evaluate_rules(strict):
            return False
        if not self.rules:
            return True
        attributes = self.resolved_attributes()
        return all(rule.evaluate(attributes, strict) for rule in self.rules)


# Hooks


class HookStage(enum.Enum):
    BEFORE = "before"
    AFTER = "after"
    ERROR = "error"
    FINALLY = "finally"


# Callback attribute for each stage. finally is a keyword hence the suffix.
_stage_callbacks = {
    HookStage.BEFORE: "before",
    HookStage.AFTER: "after",
    HookStage.ERROR: "error",
    HookStage.FINALLY: "finally_",
}


class HookPriority(enum.IntEnum):
    """
    Hook execution precedence. Lower values run first.
    """

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


def _coerce_timeout(t: datetime.timedelta | float | str) -> datetime.timedelta:
    if isinstance(t, datetime.timedelta):
        td = t
    elif isinstance(t, str):
        td = _timedelta_from_human_duration(t)
    elif _is_numeric(t):
        td = datetime.timedelta(seconds=t)
    else:
        raise TypeError(f"timeout must be a timedelta, number of seconds or duration string, not {type(t).__name__}")
    if td <= datetime.timedelta(0):
        raise ValueError("hook timeout must be positive")
    return td


class HookConfig:
    __slots__ = ("continue_on_error", "timeout", "custom_config")
    continue_on_error: bool
    # Applies to each stage invocation separately.
    timeout: datetime.timedelta
    custom_config: Mapping[str, Any]

    def __init__(
        self,
        continue_on_error: bool = True,
        timeout: datetime.timedelta | float | str = datetime.timedelta(seconds=5),
        custom_config: Mapping[str, Any] | None = None,
    ):
        object.__setattr__(self, "continue_on_error", continue_on_error)
        object.__setattr__(self, "timeout", _coerce_timeout(timeout))
        object.__setattr__(self, "custom_config", MappingProxyType(dict(custom_config or {})))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")


class HookMetadata:
    """
    Immutable description of a hook. HookManager sorts hooks by priority when
    they are added.
    """

    __slots__ = ("name", "priority", "config", "version")
    name: str
    priority: HookPriority
    config: HookConfig
    version: str

    def __init__(
        self,
        name: str,
        priority: HookPriority | str = HookPriority.NORMAL,
        config: HookConfig | None = None,
        version: str = "1.0.0",
    ):
        if not isinstance(name, str) or not name:
            raise ValueError("hook name must be a non-empty string")
        if isinstance(priority, str):
            try:
                priority = HookPriority[priority.upper()]
            except KeyError:
                raise ValueError(f"unknown hook priority {priority!r}") from None
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "priority", HookPriority(priority))
        object.__setattr__(self, "config", config if config is not None else HookConfig())
        object.__setattr__(self, "version", version)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable")


class HookContext:
    """
    Data handed to hook callbacks. A single HookContext is shared by all the
    hooks of one stage dispatch, so metadata written by a hook is visible to
    the hooks running after it in the same stage.
    """

    __slots__ = ("stage", "flag_key", "evaluation_context", "result", "error", "metadata")
    stage: HookStage
    flag_key: str
    evaluation_context: Mapping[str, AttributeValue]
    result: Any
    error: BaseException | None
    metadata: dict[str, str]

    def __init__(
        self,
        stage: HookStage,
        flag_key: str,
        evaluation_context: Mapping[str, AttributeValue] | None = None,
        result: Any = None,
        error: BaseException | None = None,
        metadata: Mapping[str, str] | None = None,
    ):
        self.stage = stage
        self.flag_key = flag_key
        self.evaluation_context = MappingProxyType({k: _freeze(v) for k, v in (evaluation_context or {}).items()})
        self.result = result
        self.error = error
        self.metadata = dict(metadata or {})


class Hook(ABC):
    """
    Cross-cutting callbacks run around every flag evaluation. Subclasses
    provide metadata and override the stages they care about. Callbacks are
    coroutines; plain functions are tolerated but can't be timed out.
    """

    @property
    @abstractmethod
    def metadata(self) -> HookMetadata: ...

    async def before(self, context: HookContext) -> None:
        pass

    async def after(self, context: HookContext) -> None:
        pass

    async def error(self, context: HookContext) -> None:
        pass

    async def finally_(self, context: HookContext) -> None:
        pass


class LoggingHook(Hook):
    """
    Logs every stage of every evaluation.
    """

    def __init__(
        self,
        include_context: bool = False,
        priority: HookPriority = HookPriority.LOW,
        level: int = logging.INFO,
    ):
        self._metadata = HookMetadata("LoggingHook", priority, HookConfig(continue_on_error=True))
        self._include_context = include_context
        self._level = level

    @property
    def metadata(self) -> HookMetadata:
        return self._metadata

    def _log(self, msg: str, context: HookContext, *args):
        if self._include_context:
            logger.log(self._level, msg + ", context: %r", context.flag_key, *args, dict(context.evaluation_context))
        else:
            logger.log(self._level, msg, context.flag_key, *args)

    async def before(self, context: HookContext) -> None:
        self._log("before evaluating flag %s", context)

    async def after(self, context: HookContext) -> None:
        self._log("after evaluating flag %s, result: %r", context, context.result)

    async def error(self, context: HookContext) -> None:
        self._log("error evaluating flag %s, error: %s", context, context.error)

    async def finally_(self, context: HookContext) -> None:
        self._log("finally evaluating flag %s", context)


class HookStatus(enum.Enum):
    OK = "ok"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class HookOutcome:
    """
    The result of invoking a single hook for a single stage.
    """

    __slots__ = ("hook", "stage", "status", "error", "duration")
    hook: HookMetadata
    stage: HookStage
    status: HookStatus
    # HookTimeoutError or HookExecutionError unless status is OK.
    error: HookError | None
    duration: float

    def __init__(self, hook: HookMetadata, stage: HookStage, status: HookStatus, error: HookError | None, duration: float):
        self.hook = hook
        self.stage = stage
        self.status = status
        self.error = error
        self.duration = duration

    def __repr__(self):
        return f"HookOutcome({self.hook.name!r}, {self.stage.value}, {self.status.value})"


_prom_hook_failures = Counter(
    "feaclient_hook_failures",
    "Hook invocations that raised or timed out",
    labelnames=["hook", "stage", "status"],
)


class HookManager:
    """
    Holds the registered hooks in priority order and runs them for one stage
    of an evaluation at a time.

    Registration replaces the hook tuple wholesale, so a stage that is already
    running keeps iterating over the snapshot it started with. HookManager is
    thread-safe.
    """

    def __init__(self, hooks: Iterable[Hook] = (), fail_fast: bool = False):
        self._fail_fast = fail_fast
        self._hooks_mu = threading.Lock()
        self._hooks: tuple[Hook, ...] = ()
        self.add_hooks(hooks)

    @property
    def fail_fast(self) -> bool:
        return self._fail_fast

    @property
    def hooks(self) -> tuple[Hook, ...]:
        return self._hooks

    def add_hook(self, hook: Hook):
        self.add_hooks([hook])

    def add_hooks(self, hooks: Iterable[Hook]):
        hooks = list(hooks)
        for h in hooks:
            if not isinstance(h, Hook):
                raise TypeError(f"hooks must be Hook instances, not {type(h).__name__}")
        with self._hooks_mu:
            # list.sort is stable so hooks of equal priority keep their
            # registration order.
            merged = [*self._hooks, *hooks]
            merged.sort(key=lambda h: h.metadata.priority)
            self._hooks = tuple(merged)

    async def _invoke(self, hook: Hook, context: HookContext) -> HookOutcome:
        metadata = hook.metadata
        stage = context.stage
        timeout = metadata.config.timeout
        callback = getattr(hook, _stage_callbacks[stage])
        error: HookError | None = None
        status = HookStatus.OK
        start = time.perf_counter()
        try:
            async with asyncio.timeout(timeout.total_seconds()) as deadline:
                ret = callback(context)
                if inspect.isawaitable(ret):
                    await ret
        except TimeoutError as e:
            if deadline.expired():
                status, error = HookStatus.TIMED_OUT, HookTimeoutError(metadata.name, stage, timeout)
            else:
                status, error = HookStatus.FAILED, HookExecutionError(metadata.name, stage, e)
        except Exception as e:
            status, error = HookStatus.FAILED, HookExecutionError(metadata.name, stage, e)
        return HookOutcome(metadata, stage, status, error, time.perf_counter() - start)

    async def execute_hooks(
        self,
        stage: HookStage,
        flag_key: str,
        context: Mapping[str, AttributeValue] | None,
        result: Any = None,
        error: BaseException | None = None,
    ) -> list[HookOutcome]:
        """
        Run the given stage of every registered hook, sequentially and in
        priority order, and return one outcome per invoked hook.

        A failing or timed out hook is logged and skipped, unless the manager
        is fail fast or the hook doesn't continue on error, in which case its
        HookError is raised and the remaining hooks of the stage don't run.
        The ERROR stage runs only when error is given.
        """
        hooks = self._hooks
        outcomes: list[HookOutcome] = []
        if stage is HookStage.ERROR and error is None:
            return outcomes
        hook_context = HookContext(stage, flag_key, context, result=result, error=error)
        for hook in hooks:
            outcome = await self._invoke(hook, hook_context)
            outcomes.append(outcome)
            match outcome.status:
                case HookStatus.OK:
                    continue
                case HookStatus.TIMED_OUT | HookStatus.FAILED:
                    assert outcome.error is not None
                    _prom_hook_failures.labels(hook=outcome.hook.name, stage=stage.value, status=outcome.status.value).inc()
                    if self._fail_fast or not outcome.hook.config.continue_on_error:
                        outcome.error.outcomes = outcomes
                        raise outcome.error
                    logger.warning(
                        "Hook %s %s in %s stage of flag %s, continuing",
                        outcome.hook.name,
                        outcome.status.value,
                        stage.value,
                        flag_key,
                        exc_info=outcome.error,
                    )
        return outcomes


# Providers


class ProviderState(enum.Enum):
    NOT_READY = "NOT_READY"
    READY = "READY"
    ERROR = "ERROR"
    DEGRADED = "DEGRADED"
    RECONNECTING = "RECONNECTING"
    SHUTDOWN = "SHUTDOWN"


class FlagType(enum.Enum):
    BOOLEAN = "boolean"
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    OBJECT = "object"


def _matches_flag_type(value: Any, flag_type: FlagType) -> bool:
    match flag_type:
        case FlagType.BOOLEAN:
            return isinstance(value, bool)
        case FlagType.STRING:
            return isinstance(value, str)
        case FlagType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        case FlagType.FLOAT:
            return _is_numeric(value)
        case FlagType.OBJECT:
            return True
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


class ProviderMetadata:
    __slots__ = ("name", "version", "capabilities")
    name: str
    version: str
    capabilities: dict[str, Any]

    def __init__(self, name: str, version: str = "1.0.0", capabilities: Mapping[str, Any] | None = None):
        self.name = name
        self.version = version
        self.capabilities = dict(capabilities or {})


class FlagResolution:
    """
    What a provider resolved a flag to.
    """

    __slots__ = ("value", "reason", "variant", "metadata")
    value: Any
    reason: Reason
    variant: str | None
    metadata: dict[str, Any]

    def __init__(self, value: Any, reason: Reason = "STATIC", variant: str | None = None, metadata: Mapping[str, Any] | None = None):
        self.value = value
        self.reason = reason
        self.variant = variant
        self.metadata = dict(metadata or {})


class Provider(ABC):
    """
    Pluggable backend that decides flag values. Implementations only need to
    provide resolve(); readiness and flag type checks are done here.
    """

    def __init__(self, name: str | None = None, version: str = "1.0.0", capabilities: Mapping[str, Any] | None = None):
        self._metadata = ProviderMetadata(name or type(self).__name__, version, capabilities)
        self._state = ProviderState.NOT_READY

    @property
    def metadata(self) -> ProviderMetadata:
        return self._metadata

    @property
    def state(self) -> ProviderState:
        return self._state

    async def initialize(self, config: Mapping[str, Any] | None = None):
        self._state = ProviderState.READY
        logger.info("Provider %s initialized", self._metadata.name)

    async def shutdown(self):
        self._state = ProviderState.SHUTDOWN
        logger.info("Provider %s shut down", self._metadata.name)

    async def health_check(self) -> bool:
        return self._state is ProviderState.READY

    @abstractmethod
    async def resolve(self, flag_key: str, default_value: Any, context: Attributes) -> FlagResolution: ...

    async def get_flag(self, flag_type: FlagType, flag_key: str, default_value: Any, context: Attributes | None = None) -> FlagResolution:
        if self._state is not ProviderState.READY:
            raise ProviderError(
                ErrorCode.PROVIDER_NOT_READY,
                f"provider {self._metadata.name} is not ready",
                {"state": self._state.value},
            )
        resolution = await self.resolve(flag_key, default_value, {} if context is None else context)
        if not _matches_flag_type(resolution.value, flag_type):
            raise ProviderError(
                ErrorCode.TYPE_MISMATCH,
                f"flag {flag_key} resolved to {type(resolution.value).__name__}, expected {flag_type.value}",
            )
        return resolution

    async def get_boolean_flag(self, flag_key: str, default_value: bool, context: Attributes | None = None) -> FlagResolution:
        return await self.get_flag(FlagType.BOOLEAN, flag_key, default_value, context)

    async def get_string_flag(self, flag_key: str, default_value: str, context: Attributes | None = None) -> FlagResolution:
        return await self.get_flag(FlagType.STRING, flag_key, default_value, context)

    async def get_integer_flag(self, flag_key: str, default_value: int, context: Attributes | None = None) -> FlagResolution:
        return await self.get_flag(FlagType.INTEGER, flag_key, default_value, context)

    async def get_float_flag(self, flag_key: str, default_value: float, context: Attributes | None = None) -> FlagResolution:
        return await self.get_flag(FlagType.FLOAT, flag_key, default_value, context)

    async def get_object_flag(self, flag_key: str, default_value: Any, context: Attributes | None = None) -> FlagResolution:
        return await self.get_flag(FlagType.OBJECT, flag_key, default_value, context)


class NoOpProvider(Provider):
    """
    Resolves every flag to the caller's default. It has nothing to set up so
    it starts out READY.
    """

    def __init__(self):
        super().__init__("NoOpProvider", capabilities={"supportsTargeting": False})
        self._state = ProviderState.READY

    async def resolve(self, flag_key: str, default_value: Any, context: Attributes) -> FlagResolution:
        return FlagResolution(default_value, reason="DEFAULT")


class _FlagRule:
    __slots__ = ("name", "conditions", "value", "percentage")
    name: str
    conditions: tuple[TargetingRule, ...]
    value: Any
    percentage: float | None


class FlagDefinition:
    """
    A flag loaded into InMemoryProvider: a default value and an ordered list
    of rules, the first matching one deciding the value.
    """

    __slots__ = ("key", "type", "default", "enabled", "metadata", "_rules")
    key: str
    type: type
    default: Any
    enabled: bool
    metadata: dict[str, Any]
    _rules: list[_FlagRule]

    @staticmethod
    def from_dict(key: str, f: DictConfig) -> FlagDefinition:
        flag = FlagDefinition()
        flag.key = key
        flag.default = f["default"]
        flag.type = type(flag.default)
        flag.enabled = f.get("enabled", True)
        flag.metadata = f.get("metadata", {})
        flag._rules = []
        names = set()
        for r in f.get("rules", []):
            if r["name"] in names:
                raise ValueError(f"duplicate rule {r['name']} in flag {key}")
            names.add(r["name"])
            if type(r["value"]) is not flag.type:
                raise ValueError(f"rule {r['name']} value must have the same type as the default of flag {key}")
            rule = _FlagRule()
            rule.name = r["name"]
            rule.conditions = tuple(TargetingRule.from_dict(c) for c in r.get("when", []))
            rule.value = r["value"]
            rule.percentage = r.get("percentage")
            flag._rules.append(rule)
        return flag

    def eval(self, attributes: Attributes) -> FlagResolution:
        if not self.enabled:
            return FlagResolution(self.default, reason="DISABLED", metadata=self.metadata)
        subject = EvaluationContext(attributes)
        for rule in self._rules:
            if not subject.create_child(rules=rule.conditions).evaluate_rules():
                continue
            if rule.percentage is None:
                return FlagResolution(rule.value, reason="TARGETING_MATCH", variant=rule.name, metadata=self.metadata)
            targeting_key = attributes.get("targeting_key")
            if not isinstance(targeting_key, str):
                continue
            if _hash_percent(targeting_key, seed=f"{self.key}\0{rule.name}") < rule.percentage:
                return FlagResolution(rule.value, reason="SPLIT", variant=rule.name, metadata=self.metadata)
        return FlagResolution(self.default, reason="DEFAULT", metadata=self.metadata)


class InMemoryProvider(Provider):
    """
    Provider serving flags defined in a dict. Useful in tests and for
    applications that ship their flag definitions with their code.
    """

    def __init__(self, flags: Mapping[str, FlagDefinition] | None = None, name: str = "InMemoryProvider"):
        super().__init__(name, capabilities={"supportsTargeting": True})
        self._flags_mu = threading.RLock()
        self._flags: dict[str, FlagDefinition] = dict(flags or {})

    @staticmethod
    def from_dict(c: DictConfig, name: str = "InMemoryProvider") -> InMemoryProvider:
        """
        Load flag definitions from a config dict, validating it against the
        packaged schema first.
        """
        _validate_config(c)
        flags = {key: FlagDefinition.from_dict(key, f) for key, f in c.get("flags", {}).items()}
        return InMemoryProvider(flags, name=name)

    @property
    def flags(self) -> dict[str, FlagDefinition]:
        with self._flags_mu:
            return dict(self._flags)

    def load_flags(self, c: DictConfig):
        """
        Replace the served flags with the ones defined in c. load_flags is
        thread-safe.
        """
        flags = InMemoryProvider.from_dict(c)._flags
        with self._flags_mu:
            self._flags = flags

    async def resolve(self, flag_key: str, default_value: Any, context: Attributes) -> FlagResolution:
        with self._flags_mu:
            flag = self._flags.get(flag_key)
        if flag is None:
            raise ProviderError(ErrorCode.FLAG_NOT_FOUND, f"flag {flag_key} does not exist")
        return flag.eval(context)


# Evaluation


class FlagEvaluation:
    """
    The result of evaluating a flag.
    """

    __slots__ = (
        "flag_key",
        "value",
        "default",
        "reason",
        "variant",
        "error_code",
        "error_message",
        "provider",
        "flag_metadata",
    )
    flag_key: str
    value: Any
    default: Any
    reason: Reason
    variant: str | None
    error_code: str | None
    error_message: str | None
    provider: str
    flag_metadata: dict[str, Any]

    def __init__(self, flag_key: str, default: Any, provider: str):
        self.flag_key = flag_key
        self.value = default
        self.default = default
        self.reason = "DEFAULT"
        self.variant = None
        self.error_code = None
        self.error_message = None
        self.provider = provider
        self.flag_metadata = {}

    def __repr__(self):
        return f"FlagEvaluation({self.flag_key!r}, value={self.value!r}, reason={self.reason})"


_prom_labels = ["flag", "provider", "reason"]
_prom_eval_duration = Histogram(
    "feaclient_evaluation_seconds",
    "Flag evaluation duration in seconds, hooks included",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1, 10],
    labelnames=_prom_labels,
)


async def evaluate(
    flag_key: str,
    context: EvaluationContext | None,
    default_context: EvaluationContext | None,
    provider: Provider,
    default_value: Any,
    hook_manager: HookManager,
    flag_type: FlagType = FlagType.OBJECT,
) -> FlagEvaluation:
    """
    Evaluate a flag through the full hook lifecycle:

    1. BEFORE hooks
    2. provider resolution
    3. AFTER hooks on success, ERROR hooks if any of the above raised
    4. FINALLY hooks, exactly once, whatever happened before

    evaluate never raises. Any failure of the provider, or a hook failure that
    the hook manager propagates, turns into the default value with reason
    ERROR. Failures of ERROR and FINALLY hooks are only logged.
    """
    if context is None:
        context = default_context if default_context is not None else EvaluationContext()
    attributes = context.resolved_attributes()
    e = FlagEvaluation(flag_key, default_value, provider.metadata.name)
    start = time.perf_counter()
    try:
        try:
            await hook_manager.execute_hooks(HookStage.BEFORE, flag_key, attributes)
            resolution = await provider.get_flag(flag_type, flag_key, default_value, attributes)
            await hook_manager.execute_hooks(HookStage.AFTER, flag_key, attributes, result=resolution.value)
        except Exception as exc:
            logger.warning("Error evaluating flag %s: %s", flag_key, exc)
            e.value = default_value
            e.reason = "ERROR"
            e.variant = None
            e.error_code = exc.code if isinstance(exc, ProviderError) else ErrorCode.GENERAL
            e.error_message = str(exc)
            try:
                await hook_manager.execute_hooks(HookStage.ERROR, flag_key, attributes, error=exc)
            except HookError:
                logger.exception("Error hooks failed for flag %s", flag_key)
        else:
            e.value = resolution.value
            e.reason = resolution.reason
            e.variant = resolution.variant
            e.flag_metadata = resolution.metadata
    finally:
        try:
            await hook_manager.execute_hooks(HookStage.FINALLY, flag_key, attributes)
        except HookError:
            logger.exception("Finally hooks failed for flag %s", flag_key)
        _prom_eval_duration.labels(flag=flag_key, provider=e.provider, reason=e.reason).observe(time.perf_counter() - start)
    return e


# Client and service


class EventType(enum.Enum):
    PROVIDER_CHANGED = "PROVIDER_CHANGED"
    FLAG_EVALUATED = "FLAG_EVALUATED"
    CONTEXT_UPDATED = "CONTEXT_UPDATED"
    ERROR = "ERROR"


class Event:
    __slots__ = ("type", "message", "data", "timestamp")
    type: EventType
    message: str
    data: Any
    timestamp: float

    def __init__(self, type: EventType, message: str, data: Any = None):
        self.type = type
        self.message = message
        self.data = data
        self.timestamp = time.time()


type EventHandler = Callable[[Event], None]


class ExtensionConfig:
    __slots__ = ("id", "enabled", "settings", "dependencies")
    id: str
    enabled: bool
    settings: dict[str, Any]
    dependencies: tuple[str, ...]

    def __init__(
        self,
        id: str,
        enabled: bool = True,
        settings: Mapping[str, Any] | None = None,
        dependencies: Iterable[str] = (),
    ):
        self.id = id
        self.enabled = enabled
        self.settings = dict(settings or {})
        self.dependencies = tuple(dependencies)


class ClientMetadata:
    __slots__ = ("name", "version", "attributes")
    name: str
    version: str
    attributes: dict[str, str]

    def __init__(self, name: str, version: str = "1.0.0", attributes: Mapping[str, str] | None = None):
        self.name = name
        self.version = version
        self.attributes = dict(attributes or {})


# Stack of (service, context) pairs for the transactions entered in the
# current task or thread.
_transaction_contexts: contextvars.ContextVar[tuple[tuple[FlagService, EvaluationContext], ...]] = contextvars.ContextVar(
    "feaclient_transaction_contexts", default=()
)


class FeatureClient:
    """
    Entry point for evaluating flags. Every getter runs the full hook
    lifecycle and never raises: failures resolve to the given default value.

    A client created by FlagService picks up the service's provider, global
    context, transaction context and hooks at each evaluation. A standalone
    client uses only what it was constructed with.
    """

    def __init__(
        self,
        metadata: ClientMetadata | str,
        provider: Provider | None = None,
        hook_manager: HookManager | None = None,
        default_context: EvaluationContext | None = None,
        service: FlagService | None = None,
        domain: str | None = None,
    ):
        if isinstance(metadata, str):
            metadata = ClientMetadata(metadata)
        self.metadata = metadata
        self._service = service
        self._domain = domain
        if provider is None and service is None:
            provider = NoOpProvider()
        self._provider = provider
        self._hook_manager = hook_manager if hook_manager is not None else HookManager()
        self._default_context = default_context if default_context is not None else EvaluationContext()

    @property
    def provider(self) -> Provider:
        if self._provider is not None:
            return self._provider
        assert self._service is not None
        return self._service.provider_for_client(self.metadata.name, self._domain)

    @property
    def hook_manager(self) -> HookManager:
        return self._hook_manager

    def add_hooks(self, hooks: Iterable[Hook]):
        self._hook_manager.add_hooks(hooks)

    def _effective_context(self, context: EvaluationContext | None) -> EvaluationContext:
        layers = []
        if self._service is not None:
            layers += [self._service.global_context, self._service.current_transaction_context()]
        layers += [self._default_context, context]
        merged = None
        for layer in layers:
            if layer is None:
                continue
            merged = layer if merged is None else merged.merge(layer)
        assert merged is not None
        return merged

    def _effective_hook_manager(self) -> HookManager:
        if self._service is None or not self._service.hooks:
            return self._hook_manager
        # Service hooks go first so they run ahead of client hooks of the same
        # priority.
        return HookManager(
            [*self._service.hooks, *self._hook_manager.hooks],
            fail_fast=self._hook_manager.fail_fast or self._service.fail_fast,
        )

    async def _evaluate(self, flag_type: FlagType, flag_key: str, default_value: Any, context: EvaluationContext | None) -> FlagEvaluation:
        e = await evaluate(
            flag_key,
            self._effective_context(context),
            self._default_context,
            self.provider,
            default_value,
            self._effective_hook_manager(),
            flag_type,
        )
        if self._service is not None:
            data = {"client": self.metadata.name, "evaluation": e}
            self._service._emit(Event(EventType.FLAG_EVALUATED, f"Flag {flag_key} evaluated for client {self.metadata.name}", data))
            if e.error_code is not None:
                self._service._emit(Event(EventType.ERROR, f"Error evaluating flag {flag_key}", data))
        return e

    async def get_boolean_details(self, flag_key: str, default_value: bool, context: EvaluationContext | None = None) -> FlagEvaluation:
        return await self._evaluate(FlagType.BOOLEAN, flag_key, default_value, context)

    async def get_string_details(self, flag_key: str, default_value: str, context: EvaluationContext | None = None) -> FlagEvaluation:
        return await self._evaluate(FlagType.STRING, flag_key, default_value, context)

    async def get_integer_details(self, flag_key: str, default_value: int, context: EvaluationContext | None = None) -> FlagEvaluation:
        return await self._evaluate(FlagType.INTEGER, flag_key, default_value, context)

    async def get_float_details(self, flag_key: str, default_value: float, context: EvaluationContext | None = None) -> FlagEvaluation:
        return await self._evaluate(FlagType.FLOAT, flag_key, default_value, context)

    async def get_object_details(self, flag_key: str, default_value: Any, context: EvaluationContext | None = None) -> FlagEvaluation:
        return await self._evaluate(FlagType.OBJECT, flag_key, default_value, context)

    async def get_boolean_value(self, flag_key: str, default_value: bool, context: EvaluationContext | None = None) -> bool:
        return (await self.get_boolean_details(flag_key, default_value, context)).value

    async def get_string_value(self, flag_key: str, default_value: str, context: EvaluationContext | None = None) -> str:
        return (await self.get_string_details(flag_key, default_value, context)).value

    async def get_integer_value(self, flag_key: str, default_value: int, context: EvaluationContext | None = None) -> int:
        return (await self.get_integer_details(flag_key, default_value, context)).value

    async def get_float_value(self, flag_key: str, default_value: float, context: EvaluationContext | None = None) -> float:
        return (await self.get_float_details(flag_key, default_value, context)).value

    async def get_object_value(self, flag_key: str, default_value: Any, context: EvaluationContext | None = None) -> Any:
        return (await self.get_object_details(flag_key, default_value, context)).value


class FlagService:
    """
    Holds the providers, global context, hooks, event handlers and extensions
    shared by the clients it creates. Create one at startup and pass it to
    whatever needs flags; nothing about it is process global. FlagService is
    thread-safe.
    """

    def __init__(
        self,
        provider: Provider | None = None,
        global_context: EvaluationContext | None = None,
        hooks: Iterable[Hook] = (),
        fail_fast: bool = False,
    ):
        self._mu = threading.RLock()
        self._default_provider: Provider = provider if provider is not None else NoOpProvider()
        self._providers: dict[str, Provider] = {}
        self._domains: dict[str, str] = {}
        self._global_context = global_context if global_context is not None else EvaluationContext()
        self._hook_manager = HookManager(hooks, fail_fast=fail_fast)
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._extensions: dict[str, ExtensionConfig] = {}
        self._extension_instances: dict[str, Any] = {}

    # Events

    def add_handler(self, event_type: EventType, handler: EventHandler):
        with self._mu:
            self._handlers[event_type].append(handler)

    def remove_handler(self, event_type: EventType, handler: EventHandler):
        with self._mu:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def _emit(self, event: Event):
        logger.debug("Emitting event %s: %s", event.type.value, event.message)
        with self._mu:
            handlers = list(self._handlers.get(event.type, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Error in %s event handler", event.type.value)

    # Providers and domains

    async def set_provider(self, provider: Provider, domain: str | None = None):
        """
        Initialize the provider if needed and make it the provider of the
        given domain, or the default provider when domain is None.
        """
        if provider.state is ProviderState.NOT_READY:
            try:
                await provider.initialize()
            except Exception as exc:
                self._emit(Event(EventType.ERROR, f"Provider {provider.metadata.name} failed to initialize", exc))
                raise
        with self._mu:
            if domain is None:
                self._default_provider = provider
            else:
                self._providers[domain] = provider
        logger.info("Provider for %s set to %s", domain or "default domain", provider.metadata.name)
        self._emit(Event(EventType.PROVIDER_CHANGED, f"Provider changed to {provider.metadata.name}", provider))

    def get_provider(self, domain: str | None = None) -> Provider:
        with self._mu:
            if domain is None:
                return self._default_provider
            return self._providers.get(domain, self._default_provider)

    def bind_domain(self, client_name: str, domain: str):
        """
        Make clients named client_name use the provider of domain.
        """
        with self._mu:
            self._domains[client_name] = domain
        self._emit(Event(EventType.CONTEXT_UPDATED, f"Client {client_name} bound to domain {domain}"))

    def provider_for_client(self, client_name: str, domain: str | None = None) -> Provider:
        with self._mu:
            if domain is None:
                domain = self._domains.get(client_name, client_name)
            return self.get_provider(domain)

    # Context

    @property
    def global_context(self) -> EvaluationContext:
        with self._mu:
            return self._global_context

    def set_global_context(self, context: EvaluationContext):
        with self._mu:
            self._global_context = context
        logger.info("Global evaluation context set: %r", dict(context.attributes))
        self._emit(Event(EventType.CONTEXT_UPDATED, "Global evaluation context updated", context))

    @contextmanager
    def transaction(self, context: EvaluationContext) -> Iterator[EvaluationContext]:
        """
        Make context the transaction context of the current task or thread
        for the duration of the with block. Transactions nest; the innermost
        one wins.
        """
        token = _transaction_contexts.set(_transaction_contexts.get() + ((self, context),))
        try:
            yield context
        finally:
            _transaction_contexts.reset(token)

    def current_transaction_context(self) -> EvaluationContext | None:
        for owner, context in reversed(_transaction_contexts.get()):
            if owner is self:
                return context
        return None

    # Hooks

    @property
    def hooks(self) -> tuple[Hook, ...]:
        return self._hook_manager.hooks

    @property
    def fail_fast(self) -> bool:
        return self._hook_manager.fail_fast

    def add_hooks(self, hooks: Iterable[Hook]):
        hooks = list(hooks)
        self._hook_manager.add_hooks(hooks)
        logger.info("Added %d hook(s)", len(hooks))

    # Clients

    def get_client(
        self,
        name: str = "default",
        domain: str | None = None,
        hooks: Iterable[Hook] = (),
        context: EvaluationContext | None = None,
        fail_fast: bool = False,
        version: str = "1.0.0",
    ) -> FeatureClient:
        return FeatureClient(
            ClientMetadata(name, version),
            hook_manager=HookManager(hooks, fail_fast=fail_fast),
            default_context=context,
            service=self,
            domain=domain,
        )

    # Extensions

    def register_extension(self, config: ExtensionConfig, instance: Any = None):
        with self._mu:
            missing = [d for d in config.dependencies if d not in self._extensions]
            if missing:
                raise ExtensionError(f"extension dependency not found: {', '.join(missing)}")
            self._extensions[config.id] = config
            if instance is not None:
                self._extension_instances[config.id] = instance
        logger.info("Registered extension %s", config.id)

    def unregister_extension(self, extension_id: str):
        with self._mu:
            dependents = [e.id for e in self._extensions.values() if extension_id in e.dependencies]
            if dependents:
                raise ExtensionError(f"extension {extension_id} is required by {', '.join(dependents)}")
            self._extensions.pop(extension_id, None)
            self._extension_instances.pop(extension_id, None)
        logger.info("Unregistered extension %s", extension_id)

    def get_extension(self, extension_id: str) -> Any:
        with self._mu:
            return self._extension_instances.get(extension_id)

    def get_extension_config(self, extension_id: str) -> ExtensionConfig | None:
        with self._mu:
            return self._extensions.get(extension_id)

    def registered_extensions(self) -> list[str]:
        with self._mu:
            return list(self._extensions)

    async def shutdown(self):
        """
        Shut down every provider known to the service. Errors are logged so
        that one failing provider doesn't keep the others running.
        """
        with self._mu:
            providers = {id(p): p for p in [self._default_provider, *self._providers.values()]}
        for provider in providers.values():
            try:
                await provider.shutdown()
            except Exception:
                logger.exception("Error shutting down provider %s", provider.metadata.name)
        with self._mu:
            self._handlers.clear()
        logger.info("Flag service shut down")
