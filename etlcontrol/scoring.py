from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import logging
import re

from etlcontrol.errors import ConfigurationError, ScoringRuleError
from etlcontrol.schemas import BatchScore, DqRule, RuleOutcome, ScoreResult


logger = logging.getLogger(__name__)

# A named predicate receives the field value, the whole record and the rule.
Predicate = Callable[[object, Mapping[str, object], DqRule], bool]

_NOT_NULL_TERM = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\s+IS\s+NOT\s+NULL", re.IGNORECASE)
_BETWEEN = re.compile(r"BETWEEN\s+(-?\d+(?:\.\d+)?)\s+AND\s+(-?\d+(?:\.\d+)?)", re.IGNORECASE)
_MATCHES_PREFIX = re.compile(r"^\s*MATCHES\s+", re.IGNORECASE)
_AND = re.compile(r"\bAND\b", re.IGNORECASE)


def _not_null(rule: DqRule, record: Mapping[str, object]) -> bool:
    columns = _NOT_NULL_TERM.findall(rule.condition or "")
    if not columns:
        columns = [rule.field_name]
    present = [record.get(column) is not None for column in columns]
    if len(columns) > 1 and _AND.search(rule.condition or ""):
        return all(present)
    return any(present)


def _range_bounds(rule: DqRule) -> tuple[float, float]:
    match = _BETWEEN.search(rule.condition or "")
    if not match:
        raise ConfigurationError(f"RANGE rule {rule.entity_type}.{rule.field_name} needs 'BETWEEN <lo> AND <hi>'")
    low, high = float(match.group(1)), float(match.group(2))
    if low > high:
        raise ConfigurationError(f"RANGE rule {rule.entity_type}.{rule.field_name} has lower bound above upper bound")
    return low, high


def _in_range(rule: DqRule, record: Mapping[str, object]) -> bool:
    value = record.get(rule.field_name)
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    low, high = _range_bounds(rule)
    return low <= number <= high


def _pattern(rule: DqRule) -> re.Pattern[str]:
    raw = _MATCHES_PREFIX.sub("", rule.condition or "")
    if not raw:
        raise ConfigurationError(f"REGEX rule {rule.entity_type}.{rule.field_name} has no pattern")
    try:
        return re.compile(raw)
    except re.error as exc:
        raise ConfigurationError(f"REGEX rule {rule.entity_type}.{rule.field_name} has a bad pattern: {exc}") from exc


def predicate_name(rule: DqRule) -> str | None:
    return rule.custom_function or rule.condition


@dataclass(frozen=True)
class EntityRuleSet:
    entity_type: str
    rules: tuple[DqRule, ...]
    max_score: int


class DqScorer:
    def __init__(self, rules: Iterable[DqRule], predicates: Mapping[str, Predicate] | None = None) -> None:
        self.predicates = dict(predicates or {})
        self._patterns: dict[tuple[str, str], re.Pattern[str]] = {}
        self._rule_sets = self._build(rules)

    def _build(self, rules: Iterable[DqRule]) -> dict[str, EntityRuleSet]:
        grouped: dict[str, list[DqRule]] = defaultdict(list)
        seen: set[tuple[str, str, str]] = set()

        for rule in rules:
            if not rule.active:
                continue
            identity = (rule.entity_type, rule.field_name, rule.rule_type)
            if identity in seen:
                raise ConfigurationError(f"duplicate dq rule {'/'.join(identity)}")
            seen.add(identity)

            if rule.points_if_met < 0 or rule.points_if_not_met < 0:
                raise ConfigurationError(f"dq rule {rule.entity_type}.{rule.field_name} has negative points")
            if rule.points_if_not_met > rule.points_if_met:
                raise ConfigurationError(
                    f"dq rule {rule.entity_type}.{rule.field_name} awards more when not met than when met"
                )

            if rule.rule_type == "RANGE":
                _range_bounds(rule)
            elif rule.rule_type == "REGEX":
                self._patterns[(rule.entity_type, rule.field_name)] = _pattern(rule)
            elif rule.rule_type in ("CUSTOM_FUNCTION", "REFERENCE_CHECK"):
                name = predicate_name(rule)
                if not name or name not in self.predicates:
                    raise ConfigurationError(
                        f"dq rule {rule.entity_type}.{rule.field_name} references unknown predicate {name!r}"
                    )
            elif rule.rule_type != "NOT_NULL":
                raise ConfigurationError(f"unknown dq rule type {rule.rule_type!r}")

            grouped[rule.entity_type].append(rule)

        return {
            entity_type: EntityRuleSet(
                entity_type=entity_type,
                rules=tuple(entity_rules),
                max_score=sum(rule.points_if_met for rule in entity_rules),
            )
            for entity_type, entity_rules in grouped.items()
        }

    def has_rules(self, entity_type: str) -> bool:
        return entity_type in self._rule_sets

    def max_score(self, entity_type: str) -> int:
        rule_set = self._rule_sets.get(entity_type)
        return rule_set.max_score if rule_set else 0

    def score(self, entity_type: str, record: Mapping[str, object]) -> ScoreResult:
        rule_set = self._rule_sets.get(entity_type)
        if rule_set is None:
            return ScoreResult(earned=0, max=0, breakdown=())

        breakdown: list[RuleOutcome] = []
        rejected = False
        for rule in rule_set.rules:
            try:
                met = self._evaluate(rule, record)
            except ScoringRuleError as exc:
                logger.warning(str(exc), extra={"entity_type": entity_type, "field_name": rule.field_name})
                met = False

            points = rule.points_if_met if met else rule.points_if_not_met
            breakdown.append(
                RuleOutcome(rule.field_name, rule.rule_type, met, points, rule.points_if_met, rule.importance)
            )
            if rule.enforce_in_etl and not met:
                rejected = True

        return ScoreResult(
            earned=sum(outcome.points_awarded for outcome in breakdown),
            max=rule_set.max_score,
            breakdown=tuple(breakdown),
            rejected=rejected,
        )

    def score_batch(self, entity_type: str, records: Iterable[Mapping[str, object]]) -> BatchScore:
        accepted: list[dict[str, object]] = []
        rejected: list[dict[str, object]] = []
        results: list[ScoreResult] = []
        for record in records:
            result = self.score(entity_type, record)
            results.append(result)
            (rejected if result.rejected else accepted).append(dict(record))
        return BatchScore(accepted=accepted, rejected=rejected, results=results)

    def rule_summary(self) -> list[dict[str, object]]:
        summary = []
        for entity_type in sorted(self._rule_sets):
            rules = self._rule_sets[entity_type].rules
            summary.append(
                {
                    "entity_type": entity_type,
                    "total_rules": len(rules),
                    "max_possible_score": self._rule_sets[entity_type].max_score,
                    "critical_rules": sum(1 for rule in rules if rule.importance == "CRITICAL"),
                    "critical_points": sum(rule.points_if_met for rule in rules if rule.importance == "CRITICAL"),
                    "enforced_rules": sum(1 for rule in rules if rule.enforce_in_etl),
                }
            )
        return summary

    def _evaluate(self, rule: DqRule, record: Mapping[str, object]) -> bool:
        if rule.rule_type == "NOT_NULL":
            return _not_null(rule, record)
        if rule.rule_type == "RANGE":
            return _in_range(rule, record)
        if rule.rule_type == "REGEX":
            value = record.get(rule.field_name)
            if value is None:
                return False
            return self._patterns[(rule.entity_type, rule.field_name)].fullmatch(str(value)) is not None

        predicate = self.predicates[predicate_name(rule)]
        try:
            return bool(predicate(record.get(rule.field_name), record, rule))
        except Exception as exc:
            raise ScoringRuleError(rule.entity_type, rule.field_name, str(exc)) from exc
