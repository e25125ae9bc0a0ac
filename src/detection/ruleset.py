from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from detection.errors import ConfigurationError, RuleCompileError
from detection.loader import RuleDocument, load_rule_documents, read_id_list
from detection.matchers import DEFAULT_POLICY, MatchPolicy
from detection.models import Level, SourceDescriptor, Status
from detection.rule import CompiledRule, compile_rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleSetOptions:
    min_level: Level = Level.INFORMATIONAL
    include_deprecated: bool = False
    include_noisy: bool = False
    excluded_ids: FrozenSet[str] = frozenset()
    noisy_ids: FrozenSet[str] = frozenset()
    level_tuning: Mapping[str, Level] = field(default_factory=dict)
    policy: MatchPolicy = DEFAULT_POLICY

    @classmethod
    def from_config(cls, config: Dict[str, Any], policy: MatchPolicy = DEFAULT_POLICY) -> "RuleSetOptions":
        try:
            tuning = {
                str(rule_id): Level.parse(level)
                for rule_id, level in (config.get("level_tuning") or {}).items()
            }
            min_level = Level.parse(config.get("min_level") or "informational")
        except ValueError as e:
            raise ConfigurationError(f"Invalid rules configuration: {e}") from e
        return cls(
            min_level=min_level,
            include_deprecated=bool(config.get("include_deprecated", False)),
            include_noisy=bool(config.get("include_noisy", False)),
            excluded_ids=frozenset(read_id_list(config.get("exclude_rules_file"))),
            noisy_ids=frozenset(read_id_list(config.get("noisy_rules_file"))),
            level_tuning=tuning,
            policy=policy,
        )


class RuleSet:
    """
    The compiled, read-only collection of active rules.

    Built once per scan and shared by all workers without locking: nothing
    in it changes after construction.
    """

    def __init__(self, rules: Iterable[CompiledRule], errors: Iterable[RuleCompileError] = (),
                 skipped: int = 0):
        self.rules: Tuple[CompiledRule, ...] = tuple(rules)
        self.errors: Tuple[RuleCompileError, ...] = tuple(errors)
        self.skipped = skipped
        self._by_id: Dict[str, CompiledRule] = {rule.rule_id: rule for rule in self.rules}

        grouped: Dict[Optional[str], List[CompiledRule]] = {}
        for rule in self.rules:
            grouped.setdefault(rule.logsource.product, []).append(rule)
        self._by_product: Dict[Optional[str], Tuple[CompiledRule, ...]] = {
            product: tuple(rules) for product, rules in grouped.items()
        }

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def get(self, rule_id: str) -> Optional[CompiledRule]:
        return self._by_id.get(rule_id)

    def candidates(self, source: SourceDescriptor) -> List[CompiledRule]:
        """Rules whose logsource does not exclude a record from `source`."""
        product = (source.product or "").strip().lower() or None
        if product is None:
            pool: Iterable[CompiledRule] = self.rules
        else:
            pool = self._by_product.get(product, ()) + self._by_product.get(None, ())
        return [rule for rule in pool if rule.logsource.is_compatible(source)]

    def require_rules(self) -> None:
        if not self.rules:
            raise ConfigurationError(
                f"No valid rules were loaded ({len(self.errors)} failed to compile, {self.skipped} skipped)"
            )

    def get_stats(self) -> Dict[str, Any]:
        by_level: Dict[str, int] = {}
        for rule in self.rules:
            by_level[rule.level.value] = by_level.get(rule.level.value, 0) + 1
        return {
            'rules_loaded': len(self.rules),
            'rules_failed': len(self.errors),
            'rules_skipped': self.skipped,
            'rules_by_level': by_level,
        }

    @classmethod
    def compile(cls, documents: Iterable[RuleDocument],
                options: Optional[RuleSetOptions] = None) -> "RuleSet":
        """
        Compile every document. Broken rules are collected as errors and
        left out; filtered rules are counted as skipped.
        """
        options = options or RuleSetOptions()
        rules: List[CompiledRule] = []
        errors: List[RuleCompileError] = []
        seen_ids: Dict[str, str] = {}
        skipped = 0

        for document in documents:
            if document.error is not None:
                error = RuleCompileError(document.error, source=document.source)
                logger.warning(f"Rule failed to load: {error}")
                errors.append(error)
                continue

            definition = document.definition
            rule_id = str(definition.get("id") or "").strip() if isinstance(definition, dict) else ""
            if rule_id and rule_id in options.excluded_ids:
                logger.debug(f"Skipping excluded rule {rule_id}")
                skipped += 1
                continue
            if rule_id and rule_id in options.noisy_ids and not options.include_noisy:
                logger.debug(f"Skipping noisy rule {rule_id}")
                skipped += 1
                continue

            try:
                rule = compile_rule(
                    definition or {},
                    source=document.source,
                    policy=options.policy,
                    level_override=options.level_tuning.get(rule_id),
                )
            except RuleCompileError as e:
                logger.warning(f"Rule failed to compile: {e}")
                errors.append(e)
                continue

            if rule.status is Status.DEPRECATED and not options.include_deprecated:
                skipped += 1
                continue
            if rule.level < options.min_level:
                skipped += 1
                continue
            if rule.rule_id in seen_ids:
                error = RuleCompileError(
                    f"Duplicate rule id (already loaded from {seen_ids[rule.rule_id]})",
                    rule_id=rule.rule_id, source=document.source,
                )
                logger.warning(f"Rule failed to compile: {error}")
                errors.append(error)
                continue

            seen_ids[rule.rule_id] = document.source
            rules.append(rule)

        ruleset = cls(rules, errors, skipped)
        logger.info(
            f"Rules loaded: {len(rules)} (skipped: {skipped}, errors: {len(errors)})"
        )
        if errors:
            logger.warning(f"Some rules failed to compile (showing first 5): {[str(e) for e in errors[:5]]}")
        return ruleset

    @classmethod
    def from_paths(cls, paths: Iterable[str], options: Optional[RuleSetOptions] = None) -> "RuleSet":
        return cls.compile(load_rule_documents(paths), options)
