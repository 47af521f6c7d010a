"""Autopilot rule binding for storage claims.

A claim annotated with kad.io/autopilot-enabled: "true" gets an
AutopilotRule selecting it by label, built from the schedule options'
AutopilotParameters. Rules are created once and adopted afterwards, so
several claims pointing at the same rule name share one object.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from config import CREATOR
from resources import Resource, ResourceKind
from store import AlreadyExistsError, StoreError

logger = logging.getLogger(__name__)

AUTOPILOT_ENABLED_ANNOTATION = 'kad.io/autopilot-enabled'


def parse_bool(value: Any) -> bool:
    """Parse an annotation value the way strconv.ParseBool-style flags read."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 't', 'true', 'yes', 'y', 'on')


@dataclass
class ConditionExpression:
    """One rule condition, e.g. volume usage percentage > 50."""
    key: str
    operator: str
    values: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {'key': self.key, 'operator': self.operator, 'values': [str(v) for v in self.values]}

    @classmethod
    def from_dict(cls, data: dict) -> 'ConditionExpression':
        return cls(key=data['key'], operator=data['operator'], values=list(data.get('values', [])))


@dataclass
class RuleAction:
    """Named action with string parameters, e.g. resize by percentage."""
    name: str
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {'name': self.name, 'params': {k: str(v) for k, v in self.params.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> 'RuleAction':
        return cls(name=data['name'], params=dict(data.get('params', {})))


@dataclass
class AutopilotParameters:
    """Autopilot settings carried in schedule options.

    Attributes:
        name: Rule name (shared by every bound claim)
        enabled: Bind rules at all
        poll_interval: Seconds between condition evaluations
        actions_cool_down_period: Seconds between repeated actions
        conditions: Condition expressions (all must hold)
        actions: Actions to take when conditions hold
        expected_pvc_size: Claim size in bytes once the rule has acted (0 = unchecked)
        match_labels: Claim labels the rule selects, filled in at bind time
    """
    name: str
    enabled: bool = True
    poll_interval: int = 10
    actions_cool_down_period: int = 0
    conditions: list = field(default_factory=list)
    actions: list = field(default_factory=list)
    expected_pvc_size: int = 0
    match_labels: dict = field(default_factory=dict)

    def for_claim(self, claim: Resource) -> 'AutopilotParameters':
        """Copy of these parameters selecting the claim's labels."""
        return AutopilotParameters(
            name=self.name,
            enabled=self.enabled,
            poll_interval=self.poll_interval,
            actions_cool_down_period=self.actions_cool_down_period,
            conditions=list(self.conditions),
            actions=list(self.actions),
            expected_pvc_size=self.expected_pvc_size,
            match_labels=dict(claim.labels),
        )

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'enabled': self.enabled,
            'poll_interval': self.poll_interval,
            'actions_cool_down_period': self.actions_cool_down_period,
            'conditions': [c.to_dict() for c in self.conditions],
            'actions': [a.to_dict() for a in self.actions],
            'expected_pvc_size': self.expected_pvc_size,
            'match_labels': dict(self.match_labels),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['AutopilotParameters']:
        if not data:
            return None
        return cls(
            name=data['name'],
            enabled=data.get('enabled', True),
            poll_interval=data.get('poll_interval', 10),
            actions_cool_down_period=data.get('actions_cool_down_period', 0),
            conditions=[ConditionExpression.from_dict(c) for c in data.get('conditions', [])],
            actions=[RuleAction.from_dict(a) for a in data.get('actions', [])],
            expected_pvc_size=data.get('expected_pvc_size', 0),
            match_labels=dict(data.get('match_labels', {})),
        )


def is_autopilot_claim(claim: Resource, params: Optional[AutopilotParameters]) -> bool:
    """True when params are active and the claim opts in by annotation."""
    if params is None or not params.enabled:
        return False
    return parse_bool(claim.annotations.get(AUTOPILOT_ENABLED_ANNOTATION, 'false'))


def build_rule(params: AutopilotParameters) -> Resource:
    """Build the AutopilotRule object for params."""
    spec = {
        'pollInterval': params.poll_interval,
        'actionsCoolDownPeriod': params.actions_cool_down_period,
        'selector': {'matchLabels': dict(params.match_labels)},
        'namespaceSelector': {'matchLabels': {'creator': CREATOR}},
        'conditions': {'expressions': [c.to_dict() for c in params.conditions]},
        'actions': [a.to_dict() for a in params.actions],
    }
    rule = Resource.build(ResourceKind.AUTOPILOT_RULE, params.name, spec=spec)
    rule.metadata['labels'] = {'creator': CREATOR}
    return rule


class RuleBinder:
    """Creates or adopts autopilot rules."""

    def __init__(self, store) -> None:
        self.store = store

    def bind(self, params: AutopilotParameters) -> Resource:
        """Create the rule for params, or return the existing one by name.

        Raises:
            StoreError: When create fails for a reason other than a conflict
        """
        rule = build_rule(params)
        try:
            live = self.store.create(rule)
            logger.info(f"Created AutopilotRule: {live.name}")
            return live
        except AlreadyExistsError:
            pass

        try:
            live = self.store.get(ResourceKind.AUTOPILOT_RULE, rule.name)
        except StoreError as e:
            raise StoreError(f"AutopilotRule {rule.name} exists but could not be fetched: {e}") from e
        logger.info(f"Found existing AutopilotRule: {live.name}")
        return live
