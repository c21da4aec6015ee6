# predicate.py
"""
Run predicates: a small tagged expression tree evaluated by a pure interpreter.

Leaves look at category flags (computed from the change set) or at fields of
the triggering event. Inner nodes combine them with AND / OR / NOT.

    when = changed("non-rust") | (event_is("pull_request") & branch_is("main"))

Expressions never execute anything; `evaluate(ctx)` only reads the context.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Set, Tuple


@dataclass(frozen=True)
class PredicateContext:
    flags: Mapping[str, bool]
    event: Any  # changegate.model.Event (duck-typed to avoid an import cycle)


class Expr:
    """Base node. Supports `&`, `|` and `~` for building trees."""

    def evaluate(self, ctx: PredicateContext) -> bool:
        raise NotImplementedError

    def categories(self) -> Set[str]:
        """Names of every category flag this expression reads."""
        return set()

    def __and__(self, other: "Expr") -> "Expr":
        return All((self, other))

    def __or__(self, other: "Expr") -> "Expr":
        return Any_((self, other))

    def __invert__(self) -> "Expr":
        return Not(self)


# ---------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Const(Expr):
    value: bool

    def evaluate(self, ctx: PredicateContext) -> bool:
        return self.value

    def __str__(self) -> str:
        return "always" if self.value else "never"


@dataclass(frozen=True)
class Changed(Expr):
    """True iff the named category has a relevant change."""
    category: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return bool(ctx.flags.get(self.category, False))

    def categories(self) -> Set[str]:
        return {self.category}

    def __str__(self) -> str:
        return f"changed({self.category})"


@dataclass(frozen=True)
class EventIs(Expr):
    kind: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.event.kind == self.kind

    def __str__(self) -> str:
        return f"event == {self.kind}"


@dataclass(frozen=True)
class BranchIs(Expr):
    """Compares against the event's target branch (PR base or pushed branch)."""
    branch: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.event.target_branch == self.branch

    def __str__(self) -> str:
        return f"branch == {self.branch}"


@dataclass(frozen=True)
class RepositoryIs(Expr):
    repository: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.event.repository == self.repository

    def __str__(self) -> str:
        return f"repository == {self.repository}"


# ---------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Not(Expr):
    operand: Expr

    def evaluate(self, ctx: PredicateContext) -> bool:
        return not self.operand.evaluate(ctx)

    def categories(self) -> Set[str]:
        return self.operand.categories()

    def __str__(self) -> str:
        return f"not {self.operand}"


@dataclass(frozen=True)
class All(Expr):
    operands: Tuple[Expr, ...]

    def evaluate(self, ctx: PredicateContext) -> bool:
        return all(op.evaluate(ctx) for op in self.operands)

    def categories(self) -> Set[str]:
        return set().union(*(op.categories() for op in self.operands))

    def __str__(self) -> str:
        return "(" + " and ".join(str(op) for op in self.operands) + ")"


@dataclass(frozen=True)
class Any_(Expr):
    operands: Tuple[Expr, ...]

    def evaluate(self, ctx: PredicateContext) -> bool:
        return any(op.evaluate(ctx) for op in self.operands)

    def categories(self) -> Set[str]:
        return set().union(*(op.categories() for op in self.operands))

    def __str__(self) -> str:
        return "(" + " or ".join(str(op) for op in self.operands) + ")"


ALWAYS = Const(True)
NEVER = Const(False)


def evaluate(expr: Expr | None, flags: Mapping[str, bool], event: Any) -> bool:
    """Evaluate `expr`; a missing predicate means "always run"."""
    if expr is None:
        return True
    return expr.evaluate(PredicateContext(flags=flags, event=event))
