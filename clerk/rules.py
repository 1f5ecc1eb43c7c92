"""
rules.py
--------

User-programmable categorization.  A rules script is a YAML document with an
ordered list of rules; each rule has a ``when`` expression evaluated in a
sandbox against read-only transaction fields, and the directive to emit when
it matches:

    accounts:
      zejzDgrmNbIPo9Rp4Qnrupk5Rmg36EIAYjod6: Assets:Chase Checking
    rules:
      - name: fast food
        when: "contains(narration, 'KFC')"
        account: Expenses:Food:Restaurant
        alias: KFC
        tags: [food]

The first matching rule wins.  Expressions are evaluated by ``simpleeval``
(no imports, no assignment, no private attribute access) with a step and
wall-clock budget per transaction.
"""

from __future__ import annotations

import ast
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import regex
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from simpleeval import EvalWithCompoundTypes

from clerk.normalize import CanonicalTransaction

logger = logging.getLogger(__name__)

DEFAULT_STEP_LIMIT = 10_000
DEFAULT_TIME_LIMIT = 0.25


class ScriptLoadError(Exception):
    """The rules script cannot be read, parsed or validated."""
    pass


class RuleEvaluationError(Exception):
    """A rule raised while evaluating one transaction."""

    def __init__(self, message: str, rule: Optional[str] = None):
        self.rule = rule
        super().__init__(message)


class BudgetExceeded(RuleEvaluationError):
    """Evaluation ran past its step or time budget."""
    pass


class Directive(BaseModel):
    account: str = Field(..., min_length=1)
    alias: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    rule: Optional[str] = None


class RuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    when: Optional[str] = None
    account: str = Field(..., min_length=1)
    alias: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class RulesFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    accounts: Dict[str, str] = Field(default_factory=dict)
    rules: List[RuleConfig] = Field(default_factory=list)


def _contains(haystack, needle) -> bool:
    if haystack is None or needle is None:
        return False
    return str(needle).lower() in str(haystack).lower()


def _matches(pattern, value, timeout: Optional[float] = None) -> bool:
    if value is None:
        return False
    return regex.search(str(pattern), str(value), timeout=timeout) is not None


def _startswith(value, prefix) -> bool:
    return value is not None and str(value).lower().startswith(str(prefix).lower())


def _endswith(value, suffix) -> bool:
    return value is not None and str(value).lower().endswith(str(suffix).lower())


FUNCTIONS = {
    "lower": lambda s: str(s).lower() if s is not None else "",
    "upper": lambda s: str(s).upper() if s is not None else "",
    "contains": _contains,
    "startswith": _startswith,
    "endswith": _endswith,
    "matches": _matches,
    "abs": abs,
    "float": float,
    "str": str,
    "len": len,
}


class _BudgetedEval(EvalWithCompoundTypes):
    """
    simpleeval evaluator that charges one step per AST node visited.

    The deadline is checked before and after every node, and regex matching
    gets the remaining time as its timeout, so a single slow helper call
    cannot outlive the budget.
    """

    def __init__(self, names, step_limit: int, deadline: float):
        functions = dict(FUNCTIONS)
        functions["matches"] = self._matches
        super().__init__(functions=functions, names=names)
        self._steps_left = step_limit
        self._deadline = deadline

    def _check_deadline(self):
        if time.monotonic() > self._deadline:
            raise BudgetExceeded("rule exceeded its time budget")

    def _matches(self, pattern, value) -> bool:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise BudgetExceeded("rule exceeded its time budget")
        try:
            return _matches(pattern, value, timeout=remaining)
        except TimeoutError:
            raise BudgetExceeded("rule exceeded its time budget")

    def _eval(self, node):
        self._steps_left -= 1
        if self._steps_left < 0:
            raise BudgetExceeded("rule exceeded its step budget")
        self._check_deadline()
        result = super()._eval(node)
        self._check_deadline()
        return result


def transaction_names(txn: CanonicalTransaction) -> dict:
    """Read-only view of a transaction exposed to rule expressions."""
    return {
        "transaction_id": txn.upstream_id,
        "account_id": txn.account_id,
        "narration": txn.narration,
        "payee": txn.payee,
        "merchant": txn.payee,
        "amount": txn.amount,
        "currency": txn.currency,
        "date": txn.date.isoformat(),
        "status": txn.status,
        "pending": txn.pending,
        "category": txn.category,
    }


class _CompiledRule:
    def __init__(self, index: int, config: RuleConfig, tree):
        self.index = index
        self.config = config
        self.tree = tree
        self.label = config.name or f"rule #{index + 1}"

    def directive(self) -> Directive:
        return Directive(account=self.config.account, alias=self.config.alias,
                         tags=list(self.config.tags), rule=self.label)


def _compile(expression: str, label: str):
    checker = EvalWithCompoundTypes(functions=dict(FUNCTIONS))
    try:
        tree = ast.parse(expression.strip())
    except SyntaxError as e:
        raise ScriptLoadError(f"{label}: invalid expression {expression!r}: {e.msg}")
    if len(tree.body) != 1 or not isinstance(tree.body[0], ast.Expr):
        raise ScriptLoadError(f"{label}: 'when' must be a single expression")
    for node in ast.walk(tree.body[0]):
        if isinstance(node, ast.expr) and type(node) not in checker.nodes:
            raise ScriptLoadError(f"{label}: {type(node).__name__} is not allowed in rules")
    return tree.body[0]


class RuleSet:
    """
    Ordered categorization rules plus upstream account aliases.

    Evaluation builds a fresh sandbox for every transaction, so nothing a
    rule does is visible to the next one.
    """

    def __init__(self, rules: List[_CompiledRule], accounts: Dict[str, str],
                 step_limit: int = DEFAULT_STEP_LIMIT, time_limit: float = DEFAULT_TIME_LIMIT,
                 origin: str = "<rules>"):
        self.rules = rules
        self.accounts = accounts
        self.step_limit = step_limit
        self.time_limit = time_limit
        self.origin = origin

    @classmethod
    def empty(cls) -> "RuleSet":
        return cls([], {}, origin="<empty>")

    @classmethod
    def from_text(cls, text: str, step_limit: int = DEFAULT_STEP_LIMIT,
                  time_limit: float = DEFAULT_TIME_LIMIT, origin: str = "<rules>") -> "RuleSet":
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ScriptLoadError(f"{origin}: invalid YAML: {e}")
        if not isinstance(data, dict):
            raise ScriptLoadError(f"{origin}: expected a mapping with 'rules' and 'accounts'")
        try:
            script = RulesFile.model_validate(data)
        except ValidationError as e:
            raise ScriptLoadError(f"{origin}: {e}")

        compiled = []
        for index, rule in enumerate(script.rules):
            label = rule.name or f"rule #{index + 1}"
            tree = _compile(rule.when, label) if rule.when is not None else None
            compiled.append(_CompiledRule(index, rule, tree))

        logger.info("Loaded %d rules and %d account aliases from %s",
                    len(compiled), len(script.accounts), origin)
        return cls(compiled, dict(script.accounts), step_limit, time_limit, origin)

    @classmethod
    def load(cls, path, step_limit: int = DEFAULT_STEP_LIMIT,
             time_limit: float = DEFAULT_TIME_LIMIT) -> "RuleSet":
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ScriptLoadError(f"Cannot read rules file {path}: {e}")
        return cls.from_text(text, step_limit, time_limit, origin=str(path))

    @classmethod
    def from_settings(cls, settings) -> "RuleSet":
        if not settings.rules_file:
            return cls.empty()
        return cls.load(settings.rules_file, settings.rule_step_limit, settings.rule_time_limit)

    def account_path(self, account_id: str) -> Optional[str]:
        return self.accounts.get(account_id)

    def evaluate(self, txn: CanonicalTransaction) -> List[Directive]:
        """
        Return the directive of the first matching rule, or an empty list.

        Raises:
            BudgetExceeded: The step or time budget ran out.
            RuleEvaluationError: A rule expression raised.
        """
        if not self.rules:
            return []

        evaluator = _BudgetedEval(
            names=transaction_names(txn),
            step_limit=self.step_limit,
            deadline=time.monotonic() + self.time_limit,
        )
        for rule in self.rules:
            if rule.tree is None:
                return [rule.directive()]
            try:
                matched = evaluator.eval(rule.config.when, previously_parsed=rule.tree)
            except BudgetExceeded as e:
                e.rule = rule.label
                raise
            except Exception as e:
                raise RuleEvaluationError(f"{rule.label}: {type(e).__name__}: {e}", rule.label) from e
            if matched:
                return [rule.directive()]
        return []
