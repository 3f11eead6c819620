# policy/trafficpolicy.py
"""Traffic policy documents and their merge algebra.

A policy is an ordered list of rules per phase. Merging is append-only per
phase, so rule order is execution order. The optional top-level ``enabled``
flag of the legacy schema never lives inside a TrafficPolicy; it is pulled out
by ``extract_enabled`` and merged separately with ``merge_enabled``.
"""
from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import InvalidTrafficPolicy

ON_HTTP_REQUEST = "on_http_request"
ON_HTTP_RESPONSE = "on_http_response"
ON_TCP_CONNECT = "on_tcp_connect"

PHASES = (ON_HTTP_REQUEST, ON_HTTP_RESPONSE, ON_TCP_CONNECT)

LEGACY_PHASES = {
    "inbound": ON_HTTP_REQUEST,
    "outbound": ON_HTTP_RESPONSE,
}


@dataclass
class Action:
    type: str
    config: Any = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.config is not None:
            out["config"] = copy.deepcopy(self.config)
        return out


@dataclass
class Rule:
    name: Any = None
    expressions: List[str] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)

    def with_expressions(self, *extra: str) -> "Rule":
        """Copy of the rule with ``extra`` appended to its expressions, skipping duplicates."""
        return Rule(
            name=self.name,
            expressions=append_unique(self.expressions, *extra),
            actions=[Action(a.type, copy.deepcopy(a.config)) for a in self.actions],
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.name is not None and self.name != "":
            out["name"] = self.name
        if self.expressions:
            out["expressions"] = list(self.expressions)
        out["actions"] = [a.to_dict() for a in self.actions]
        return out

    @classmethod
    def from_dict(cls, raw: Any) -> "Rule":
        if not isinstance(raw, dict):
            raise InvalidTrafficPolicy(f"rule must be an object, got {type(raw).__name__}")
        expressions = raw.get("expressions") or []
        actions = raw.get("actions") or []
        if not isinstance(expressions, list) or not isinstance(actions, list):
            raise InvalidTrafficPolicy(f"rule {raw.get('name')!r}: expressions and actions must be lists")
        parsed: List[Action] = []
        for a in actions:
            if not isinstance(a, dict) or not a.get("type"):
                raise InvalidTrafficPolicy(f"rule {raw.get('name')!r}: every action needs a type")
            parsed.append(Action(str(a["type"]), copy.deepcopy(a.get("config"))))
        return cls(name=raw.get("name"), expressions=[str(e) for e in expressions], actions=parsed)


def append_unique(existing: Iterable[str], *items: str) -> List[str]:
    out = list(existing)
    seen = set(out)
    for item in items:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


class TrafficPolicy:
    """Per-phase rule lists.

    Phases outside PHASES are kept verbatim so merging never drops
    configuration this controller does not understand.
    """

    def __init__(self, phases: Optional[Dict[str, List[Any]]] = None):
        self.phases: Dict[str, List[Any]] = {p: [] for p in PHASES}
        for name, rules in (phases or {}).items():
            self.phases.setdefault(name, [])
            self.phases[name].extend(rules)

    @property
    def on_http_request(self) -> List[Rule]:
        return self.phases[ON_HTTP_REQUEST]

    @property
    def on_http_response(self) -> List[Rule]:
        return self.phases[ON_HTTP_RESPONSE]

    @property
    def on_tcp_connect(self) -> List[Rule]:
        return self.phases[ON_TCP_CONNECT]

    def add_rule(self, phase: str, rule: Rule) -> None:
        self.phases.setdefault(phase, []).append(rule)

    def add_rule_on_http_request(self, rule: Rule) -> None:
        self.add_rule(ON_HTTP_REQUEST, rule)

    def add_rule_on_http_response(self, rule: Rule) -> None:
        self.add_rule(ON_HTTP_RESPONSE, rule)

    def add_rule_on_tcp_connect(self, rule: Rule) -> None:
        self.add_rule(ON_TCP_CONNECT, rule)

    def prepend_rule(self, phase: str, rule: Rule) -> None:
        self.phases.setdefault(phase, []).insert(0, rule)

    def merge(self, other: Optional["TrafficPolicy"]) -> None:
        """Append every rule of ``other`` after ours, phase by phase."""
        if other is None or other.is_empty():
            return
        for phase, rules in other.phases.items():
            self.phases.setdefault(phase, []).extend(copy.deepcopy(rules))

    def contains_action(self, action_type: str) -> bool:
        for phase in PHASES:
            for rule in self.phases[phase]:
                if any(a.type == action_type for a in rule.actions):
                    return True
        return False

    def is_empty(self) -> bool:
        return all(len(rules) == 0 for rules in self.phases.values())

    def deep_copy(self) -> "TrafficPolicy":
        return TrafficPolicy(copy.deepcopy(self.phases))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for phase, rules in self.phases.items():
            if not rules:
                continue
            if phase in PHASES:
                out[phase] = [r.to_dict() for r in rules]
            else:
                out[phase] = copy.deepcopy(rules)
        return out

    def to_document(self, enabled: Optional[bool] = None) -> Dict[str, Any]:
        """Externally persisted form, the only place ``enabled`` is re-attached."""
        doc = self.to_dict()
        if enabled is not None:
            doc["enabled"] = enabled
        return doc

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TrafficPolicy):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"TrafficPolicy({self.to_dict()!r})"

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], strict: bool = True) -> "TrafficPolicy":
        if not isinstance(raw, dict):
            raise InvalidTrafficPolicy(f"traffic policy must be an object, got {type(raw).__name__}")
        unknown = sorted(k for k in raw if k not in PHASES)
        if strict and unknown:
            raise InvalidTrafficPolicy(
                f"traffic policy contains unknown keys that would be ignored: {', '.join(unknown)}; "
                f"valid keys are: {', '.join(PHASES)}"
            )
        tp = cls()
        for phase, rules in raw.items():
            if rules is None:
                continue
            if not isinstance(rules, list):
                raise InvalidTrafficPolicy(f"phase {phase!r} must be a list of rules")
            if phase in PHASES:
                tp.phases[phase].extend(Rule.from_dict(r) for r in rules)
            else:
                tp.phases[phase] = copy.deepcopy(rules)
        return tp

    @classmethod
    def from_json(cls, data: Any) -> "TrafficPolicy":
        """Strict parse: only the three current phase keys are accepted."""
        if data is None or data == "" or data == b"":
            return cls()
        return cls.from_dict(_load(data), strict=True)


def _load(data: Any) -> Dict[str, Any]:
    if isinstance(data, dict):
        return copy.deepcopy(data)
    try:
        raw = json.loads(data)
    except ValueError as e:
        raise InvalidTrafficPolicy(f"failed to unmarshal traffic policy: {e}. raw traffic policy: {data!r}") from e
    if not isinstance(raw, dict):
        raise InvalidTrafficPolicy(f"traffic policy must be an object, got {type(raw).__name__}")
    return raw


def is_legacy(doc: Dict[str, Any]) -> bool:
    return any(k in doc for k in LEGACY_PHASES)


def convert_legacy(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Rename inbound/outbound onto the current phase names, appending onto any existing rules."""
    out: Dict[str, Any] = {}
    for key, val in doc.items():
        target = LEGACY_PHASES.get(key, key)
        if target in out and isinstance(out[target], list) and isinstance(val, list):
            out[target] = out[target] + val
        else:
            out[target] = val
    return out


def extract_enabled(doc: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[bool]]:
    if "enabled" not in doc:
        return doc, None
    doc = dict(doc)
    val = doc.pop("enabled")
    return doc, val if isinstance(val, bool) else None


def parse_policy_document(data: Any) -> Tuple[TrafficPolicy, Optional[bool]]:
    """Lenient parse used for NgrokTrafficPolicy objects and extension refs."""
    if data is None or data == "" or data == b"":
        return TrafficPolicy(), None
    doc, enabled = extract_enabled(_load(data))
    if is_legacy(doc):
        doc = convert_legacy(doc)
    return TrafficPolicy.from_dict(doc, strict=False), enabled


def merge_policies(a: Optional[TrafficPolicy], b: Optional[TrafficPolicy]) -> TrafficPolicy:
    out = a.deep_copy() if a is not None else TrafficPolicy()
    out.merge(b)
    return out


def merge_enabled(a: Optional[bool], b: Optional[bool]) -> Optional[bool]:
    if a is None:
        return b
    if b is None:
        return a
    return a or b
