"""
ERCPiston - Electrical Rule Checking

Validates the extracted nets against electrical rules and keeps a persistent
violation list on the LogicModel.

RULES are plain functions registered by ID:

    @register_rule('net.my_rule')
    def check_my_rule(model, nets):
        for net in nets:
            ...
            yield RCViolation('net.my_rule', RCSeverity.ERROR, "{0} ...", [oid])

BUILT-IN RULES:
- open_port                    WARNING  connectable object in no net
- net.undefined_port_direction ERROR    gate port without direction
- net.not_feeded               ERROR    net with in-ports but no driver
- net.outputs_connected        ERROR    net with more than one out-port

A violation is identified by (rule ID, primary object ID). Re-running a check
keeps the accepted flag of every violation whose key is unchanged. A rule that
raises is logged and contributes nothing; a check run never fails.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import NotFoundError
from .logic_model import LogicModel
from .logic_types import (
    GatePort, Net, ObjectType, PortDirection, RCSeverity, RCViolation
)

RuleFunction = Callable[[LogicModel, List[Net]], Iterable[RCViolation]]

RULE_REGISTRY: Dict[str, RuleFunction] = {}


def register_rule(rule_id: str):
    """Decorator adding a rule function to RULE_REGISTRY."""
    def decorator(fn: RuleFunction) -> RuleFunction:
        RULE_REGISTRY[rule_id] = fn
        fn.rule_id = rule_id
        return fn
    return decorator


# =============================================================================
# BUILT-IN RULES
# =============================================================================

def _net_ports(model: LogicModel, net: Net) -> List[Tuple[GatePort, PortDirection]]:
    ports = []
    for oid in sorted(net.member_ids):
        obj = model.get(oid)
        if isinstance(obj, GatePort):
            direction = model.port_direction(obj)
            if direction is not None:
                ports.append((obj, direction))
    return ports


@register_rule('open_port')
def check_open_ports(model: LogicModel, nets: List[Net]) -> Iterable[RCViolation]:
    connected = set()
    for net in nets:
        if len(net) > 1:
            connected |= net.member_ids

    for obj in model.connectable_objects():
        if obj.object_id in connected:
            continue
        if isinstance(obj, GatePort):
            description = "Port {0} is unconnected."
        else:
            description = "{0} is unconnected."
        yield RCViolation('open_port', RCSeverity.WARNING, description,
                          [obj.object_id], obj.layer, obj.object_type)


@register_rule('net.undefined_port_direction')
def check_undefined_port_direction(model: LogicModel, nets: List[Net]) -> Iterable[RCViolation]:
    for port in model.objects(object_type=ObjectType.GATE_PORT):
        if model.port_direction(port) == PortDirection.UNDEFINED:
            yield RCViolation(
                'net.undefined_port_direction', RCSeverity.ERROR,
                "The direction of port {0} is undefined.",
                [port.object_id], port.layer, ObjectType.GATE_PORT)


@register_rule('net.not_feeded')
def check_not_feeded(model: LogicModel, nets: List[Net]) -> Iterable[RCViolation]:
    for net in nets:
        ports = _net_ports(model, net)
        in_ports = [p for p, d in ports if d == PortDirection.IN]
        drivers = [p for p, d in ports if d in (PortDirection.OUT, PortDirection.INOUT)]
        if in_ports and not drivers:
            for port in in_ports:
                yield RCViolation(
                    'net.not_feeded', RCSeverity.ERROR,
                    "In-Port {0} is not feeded by an out-port.",
                    [port.object_id], port.layer, ObjectType.GATE_PORT)


@register_rule('net.outputs_connected')
def check_outputs_connected(model: LogicModel, nets: List[Net]) -> Iterable[RCViolation]:
    for net in nets:
        out_ports = [p for p, d in _net_ports(model, net) if d == PortDirection.OUT]
        if len(out_ports) > 1:
            for port in out_ports:
                yield RCViolation(
                    'net.outputs_connected', RCSeverity.ERROR,
                    "Out-Port {0} is connected with other out-ports.",
                    [port.object_id], port.layer, ObjectType.GATE_PORT)


# =============================================================================
# PISTON
# =============================================================================

@dataclass
class ERCConfig:
    """Configuration for rule checking"""
    # Rule IDs evaluated by default (None = every registered rule)
    enabled_rules: Optional[List[str]] = None

    verbose: bool = False


@dataclass
class ERCResult:
    """Result from a rule check run"""
    violations: List[RCViolation] = field(default_factory=list)
    rules_run: List[str] = field(default_factory=list)
    rules_failed: List[str] = field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def error_count(self) -> int:
        return sum(1 for v in self.violations if v.severity == RCSeverity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for v in self.violations if v.severity == RCSeverity.WARNING)

    @property
    def accepted_count(self) -> int:
        return sum(1 for v in self.violations if v.accepted)

    @property
    def passed(self) -> bool:
        """True when no unaccepted error remains."""
        return not any(v.severity == RCSeverity.ERROR and not v.accepted
                       for v in self.violations)

    @property
    def by_rule(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for v in self.violations:
            counts[v.rule_id] = counts.get(v.rule_id, 0) + 1
        return counts

    def summary(self) -> str:
        status = "PASSED" if self.passed else "FAILED"
        parts = [f"ERC {status}: {self.error_count} errors, {self.warning_count} warnings "
                 f"({self.accepted_count} accepted)"]
        for rule_id, count in sorted(self.by_rule.items()):
            parts.append(f"  {rule_id}: {count}")
        if self.rules_failed:
            parts.append(f"  failed rules: {', '.join(self.rules_failed)}")
        return "\n".join(parts)


class ERCPiston:
    """
    Runs registered rules and maintains the model's violation list.
    """

    def __init__(self, config: Optional[ERCConfig] = None):
        self.config = config or ERCConfig()

    def _selected_rules(self, rule_ids: Optional[Iterable[str]]) -> List[str]:
        if rule_ids is not None:
            selected = list(rule_ids)
        elif self.config.enabled_rules is not None:
            selected = list(self.config.enabled_rules)
        else:
            selected = sorted(RULE_REGISTRY)
        for rule_id in selected:
            if rule_id not in RULE_REGISTRY:
                raise NotFoundError('rule', rule_id)
        return selected

    def check(self, model: LogicModel, rule_ids: Optional[Iterable[str]] = None) -> ERCResult:
        """
        Evaluate rules and replace their previous violations on the model.

        Violations of rules not selected, or of rules that raised, stay
        untouched.
        """
        start = time.time()
        selected = self._selected_rules(rule_ids)
        nets = model.nets

        found: List[RCViolation] = []
        failed: List[str] = []
        for rule_id in selected:
            try:
                violations = list(RULE_REGISTRY[rule_id](model, nets))
            except Exception as e:
                self._log(f"[ERC] Rule {rule_id} failed: {e}")
                failed.append(rule_id)
                continue
            for v in violations:
                v.rule_id = rule_id
            found.extend(violations)
            self._log(f"[ERC] {rule_id}: {len(violations)} violations")

        previous = model.violations
        accepted_keys = {v.key for v in previous if v.accepted}
        for v in found:
            v.accepted = v.key in accepted_keys

        order = {rule_id: i for i, rule_id in enumerate(selected)}
        found.sort(key=lambda v: (order[v.rule_id], v.key[1]))
        replaced = set(order) - set(failed)
        kept = [v for v in previous if v.rule_id not in replaced]
        model.set_violations(kept + found)

        result = ERCResult(
            violations=model.violations,
            rules_run=[r for r in selected if r not in failed],
            rules_failed=failed,
            elapsed_s=time.time() - start,
        )
        self._log(f"[ERC] {result.error_count} errors, {result.warning_count} warnings")
        return result

    @staticmethod
    def filter(violations: Iterable[RCViolation], layer: Optional[int] = None,
               object_type: Optional[ObjectType] = None,
               severity: Optional[RCSeverity] = None, text: Optional[str] = None,
               accepted: Optional[bool] = None, model: Optional[LogicModel] = None
               ) -> List[RCViolation]:
        """Select violations by any combination of criteria."""
        needle = text.lower() if text else None
        result = []
        for v in violations:
            if layer is not None and v.layer != layer:
                continue
            if object_type is not None and v.object_type != object_type:
                continue
            if severity is not None and v.severity != severity:
                continue
            if accepted is not None and v.accepted != accepted:
                continue
            if needle and needle not in v.rule_id.lower() \
                    and needle not in v.render_description(model).lower():
                continue
            result.append(v)
        return result

    def _set_accepted(self, model: LogicModel, keys, accepted: bool) -> int:
        keys = {(str(k[0]), int(k[1])) for k in keys}
        violations = model.violations
        changed = 0
        for v in violations:
            if v.key in keys and v.accepted != accepted:
                v.accepted = accepted
                changed += 1
        if changed:
            model.set_violations(violations)
        return changed

    def accept(self, model: LogicModel, keys: Iterable[Tuple[str, int]]) -> int:
        """Mark violations as accepted; returns how many changed."""
        return self._set_accepted(model, keys, True)

    def reject(self, model: LogicModel, keys: Iterable[Tuple[str, int]]) -> int:
        """Clear the accepted flag; returns how many changed."""
        return self._set_accepted(model, keys, False)

    def erc_report(self, model: LogicModel) -> str:
        """Generate human-readable violation report"""
        violations = model.violations
        lines = [
            "=" * 60,
            "ELECTRICAL RULE CHECK REPORT",
            "=" * 60,
            "",
        ]
        for severity in (RCSeverity.ERROR, RCSeverity.WARNING):
            subset = self.filter(violations, severity=severity)
            lines.append("-" * 60)
            lines.append(f"{severity.value.upper()}S ({len(subset)})")
            lines.append("-" * 60)
            for v in subset:
                mark = "[accepted] " if v.accepted else ""
                lines.append(f"  {mark}{v.rule_id}: {v.render_description(model)}")
            lines.append("")
        lines.append("=" * 60)
        return "\n".join(lines)

    def _log(self, message: str):
        """Log a message if verbose mode is enabled"""
        if self.config.verbose:
            print(message)
