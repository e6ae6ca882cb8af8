"""Claim release predicates.

Horizon hands predicates over as loosely shaped JSON. They are parsed once,
at ingestion, into a closed set of frozen variants and evaluated by a pure
recursive function. Anything that does not parse is kept as ``None`` on the
claimant and is never claimable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from claimer.models import ClaimGrant

log = logging.getLogger("claimer.predicates")


class PredicateParseError(ValueError):
    pass


@dataclass(slots=True, frozen=True)
class Unconditional:
    pass


@dataclass(slots=True, frozen=True)
class NotBefore:
    at: datetime


@dataclass(slots=True, frozen=True)
class NotAfter:
    at: datetime


@dataclass(slots=True, frozen=True)
class AllOf:
    children: tuple[Predicate, ...]


@dataclass(slots=True, frozen=True)
class AnyOf:
    children: tuple[Predicate, ...]


@dataclass(slots=True, frozen=True)
class Negation:
    child: Predicate


Predicate = Union[Unconditional, NotBefore, NotAfter, AllOf, AnyOf, Negation]


def evaluate(predicate: Predicate, at: datetime) -> bool:
    if isinstance(predicate, Unconditional):
        return True
    if isinstance(predicate, NotBefore):
        return at >= predicate.at
    if isinstance(predicate, NotAfter):
        return at <= predicate.at
    if isinstance(predicate, AllOf):
        return all(evaluate(c, at) for c in predicate.children)
    if isinstance(predicate, AnyOf):
        return any(evaluate(c, at) for c in predicate.children)
    if isinstance(predicate, Negation):
        return not evaluate(predicate.child, at)
    raise TypeError(f"not a predicate: {predicate!r}")


def _parse_instant(raw: dict) -> datetime:
    if "abs_before_epoch" in raw:
        try:
            return datetime.fromtimestamp(int(raw["abs_before_epoch"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise PredicateParseError(f"bad abs_before_epoch: {raw['abs_before_epoch']!r}") from e
    value = raw.get("abs_before")
    if not isinstance(value, str):
        raise PredicateParseError(f"bad abs_before: {value!r}")
    try:
        ts = datetime.fromisoformat(value)
    except ValueError as e:
        raise PredicateParseError(f"bad abs_before: {value!r}") from e
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _parse_children(value: Any, key: str) -> tuple[Predicate, ...]:
    if not isinstance(value, list) or not value:
        raise PredicateParseError(f"'{key}' needs a non-empty list, got {value!r}")
    return tuple(parse_predicate(v) for v in value)


def parse_predicate(raw: Any) -> Predicate:
    """Convert a Horizon claimant predicate into a Predicate.

    ``{"not": {"abs_before": T}}`` becomes NotBefore(T) so the boundary
    matches the ledger exactly (claimable from T on). A bare ``abs_before``
    becomes NotAfter(T).
    """
    if not isinstance(raw, dict):
        raise PredicateParseError(f"predicate must be an object, got {type(raw).__name__}")
    if raw.get("unconditional") is True:
        return Unconditional()
    if "and" in raw:
        return AllOf(_parse_children(raw["and"], "and"))
    if "or" in raw:
        return AnyOf(_parse_children(raw["or"], "or"))
    if "not" in raw:
        inner = raw["not"]
        if isinstance(inner, dict) and ("abs_before" in inner or "abs_before_epoch" in inner):
            return NotBefore(_parse_instant(inner))
        return Negation(parse_predicate(inner))
    if "abs_before" in raw or "abs_before_epoch" in raw:
        return NotAfter(_parse_instant(raw))
    raise PredicateParseError(f"unsupported predicate: {sorted(raw)}")


def parse_or_none(raw: Any) -> Predicate | None:
    try:
        return parse_predicate(raw)
    except PredicateParseError as e:
        log.debug("Unparseable predicate treated as locked: %s", e)
        return None


def is_claimable(grant: ClaimGrant, claimant_key: str, at: datetime) -> bool:
    """True if ``claimant_key`` may claim ``grant`` at ``at``.

    Only the querying claimant's own predicate is evaluated.
    """
    claimant = grant.claimant_for(claimant_key)
    if claimant is None or claimant.predicate is None:
        return False
    return evaluate(claimant.predicate, at)
