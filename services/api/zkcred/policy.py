"""
Presentation policies.

A policy maps a claim name to a condition::

    {"age": {"gte": 18}, "nationality": {"in": ["DE", "FR"]}, "member": true}

Conditions are parsed into a closed set of predicate kinds. Claim names are
resolved through a :class:`ClaimRegistry`, where ``age`` is a derived claim
backed by a birthdate disclosure rather than a field of the credential.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from zkcred.credential import BIRTHDATE_CLAIMS
from zkcred.errors import PolicyError
from zkcred.models import Policy
from zkcred.utils import canonical_json

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS = ("gte", "gt", "lte", "lt")
SET_OPERATORS = ("in", "nin")


@dataclass(frozen=True)
class NumericBound:
    bounds: Tuple[Tuple[str, float], ...]


@dataclass(frozen=True)
class SetMembership:
    operator: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class LiteralValue:
    value: Any


Predicate = Union[NumericBound, SetMembership, LiteralValue]


@dataclass(frozen=True)
class PolicyMatch:
    valid: bool
    error: Optional[str] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_condition(name: str, condition: Any) -> Predicate:
    if not isinstance(condition, dict):
        return LiteralValue(condition)
    if not condition:
        raise PolicyError(f"Empty policy condition for '{name}'")
    unknown = set(condition) - set(NUMERIC_OPERATORS) - set(SET_OPERATORS)
    if unknown:
        raise PolicyError(f"Unknown operator(s) {sorted(unknown)} in policy condition for '{name}'")

    set_ops = [op for op in SET_OPERATORS if op in condition]
    num_ops = [op for op in NUMERIC_OPERATORS if op in condition]
    if set_ops and num_ops:
        raise PolicyError(f"Policy condition for '{name}' mixes numeric and set operators")
    if len(set_ops) > 1:
        raise PolicyError(f"Policy condition for '{name}' has both 'in' and 'nin'")
    if set_ops:
        op = set_ops[0]
        values = condition[op]
        if not isinstance(values, list):
            raise PolicyError(f"'{op}' for '{name}' must be a list")
        return SetMembership(op, tuple(values))
    for op in num_ops:
        if not _is_number(condition[op]):
            raise PolicyError(f"'{op}' for '{name}' must be a number")
    return NumericBound(tuple((op, condition[op]) for op in num_ops))


def parse_policy(raw: Policy) -> Dict[str, Predicate]:
    if not isinstance(raw, dict):
        raise PolicyError("Policy must be a mapping of claim name to condition")
    return {name: parse_condition(name, condition) for name, condition in raw.items() if condition is not None}


class ClaimRegistry:
    """Decides whether a claim name can be proven from a set of available claims."""

    def __init__(self):
        self._derived: Dict[str, Tuple[Callable[[Iterable[str]], bool], str]] = {}

    def register_derived(self, name: str, available: Callable[[Iterable[str]], bool], missing_message: str):
        self._derived[name] = (available, missing_message)

    def require(self, name: str, available_claims: Iterable[str]):
        claims = list(available_claims)
        derived = self._derived.get(name)
        if derived is not None:
            check, message = derived
            if not check(claims):
                raise PolicyError(message)
            return
        if name not in claims:
            raise PolicyError(
                f"Claim '{name}' not available in credential. Available: {', '.join(claims)}"
            )


def _has_birthdate(claims: Iterable[str]) -> bool:
    return any(name in BIRTHDATE_CLAIMS for name in claims)


default_registry = ClaimRegistry()
default_registry.register_derived(
    "age", _has_birthdate, "Cannot prove age: no birthdate claim available in credential"
)


def can_satisfy(policy: Policy, available_claims: Iterable[str], registry: ClaimRegistry = default_registry) -> bool:
    claims = list(available_claims)
    for name in parse_policy(policy):
        registry.require(name, claims)
    return True


def matches(expected: Policy, actual: Policy) -> PolicyMatch:
    """Exact structural comparison; ``gte: 21`` does not satisfy ``gte: 18``."""
    if not isinstance(actual, dict):
        return PolicyMatch(False, "Presented policy is not a mapping")
    for key, condition in expected.items():
        if condition is None:
            continue
        if key not in actual or actual[key] is None:
            return PolicyMatch(False, f"Missing policy condition for '{key}'")
        if canonical_json(condition) != canonical_json(actual[key]):
            logger.debug("policy mismatch for %s", key)
            return PolicyMatch(False, f"Policy condition mismatch for '{key}'")
    return PolicyMatch(True)
