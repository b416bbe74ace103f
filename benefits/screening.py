import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .models import FlagSeverity, FraudFlag

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


ORDERED = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN_OR_EQUAL,
}


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        return self._apply_operator(self._get_field_value(context, self.field), self.value)

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        value = context
        for part in field_path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op in ORDERED and field_value is None:
            return False
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        return False


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)


@dataclass
class ScreeningRule:
    code: str
    severity: FlagSeverity
    description: str
    conditions: Union[Condition, ConditionGroup]
    is_active: bool = True
    priority: int = 0
    metadata: dict = field(default_factory=dict)

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)


class ClaimScreener:
    """Flags suspicious claims. Flags are advisory and never block a submission."""

    def __init__(self, rules: Optional[list[ScreeningRule]] = None):
        self.rules: dict[str, ScreeningRule] = {}
        for rule in default_screening_rules() if rules is None else rules:
            self.add_rule(rule)

    def add_rule(self, rule: ScreeningRule) -> None:
        self.rules[rule.code] = rule

    def remove_rule(self, code: str) -> None:
        self.rules.pop(code, None)

    def list_rules(self) -> list[ScreeningRule]:
        return sorted(self.rules.values(), key=lambda r: r.priority, reverse=True)

    def screen(self, context: dict) -> list[FraudFlag]:
        flags = [
            FraudFlag(code=rule.code, severity=rule.severity, description=rule.description)
            for rule in self.list_rules()
            if rule.evaluate(context)
        ]
        for flag in flags:
            logger.warning("Claim %s flagged %s (%s)", context.get("claim", {}).get("id"), flag.code, flag.severity.value)
        return flags


def default_screening_rules() -> list[ScreeningRule]:
    return [
        ScreeningRule(
            code="duplicate_service",
            severity=FlagSeverity.HIGH,
            description="Another claim on this enrollment bills the same service date, procedure and amount",
            conditions=Condition(field="history.duplicates", operator=ConditionOperator.GREATER_THAN, value=0),
            priority=30,
        ),
        ScreeningRule(
            code="exceeds_annual_maximum",
            severity=FlagSeverity.MEDIUM,
            description="Billed amount is above the plan's annual maximum",
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="enrollment.annual_maximum", operator=ConditionOperator.NOT_EQUALS, value=None),
                Condition(field="claim.over_annual_maximum", operator=ConditionOperator.IS_TRUE),
            ]),
            priority=20,
        ),
        ScreeningRule(
            code="future_service_date",
            severity=FlagSeverity.HIGH,
            description="Service date is in the future",
            conditions=Condition(field="claim.future_service_date", operator=ConditionOperator.IS_TRUE),
            priority=20,
        ),
        ScreeningRule(
            code="breakdown_mismatch",
            severity=FlagSeverity.LOW,
            description="Itemized breakdown does not sum to the total billed",
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="claim.has_breakdown", operator=ConditionOperator.IS_TRUE),
                Condition(field="claim.breakdown_matches", operator=ConditionOperator.IS_FALSE),
            ]),
            priority=10,
        ),
    ]
