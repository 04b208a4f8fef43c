"""
Salary Item Resolver - Order, validate, and evaluate a salary group.

Responsibility:
    Turns a salary group (items at calculation orders) plus context
    variables into an ordered components map and a total.  Validation runs
    before any evaluation so a bad configuration fails fast without a
    partial components map.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Used by the payroll
    orchestrator at calculation time and by the salary group service at
    save time.

Invariants enforced:
    - Calculation orders are unique within a group (DuplicateOrderError).
    - Every reference resolves to a group member or a context variable
      (UnknownVariableError).
    - A member may only reference members with a strictly lower
      calculation order (InvalidOrderingError).
    - The reference graph is acyclic (CircularReferenceError), checked with
      Kahn's topological sort.
    - ``total`` equals the sum of ``components`` exactly: components are
      quantized before summation.

Failure modes:
    - SalaryItemNotFoundError if a member references a missing item.
    - FormulaSyntaxError for malformed formulas.
    - FormulaEvaluationError for division by zero at evaluation time.

Usage:
    resolver = SalaryItemResolver(FormulaEvaluator(), context_variables=("workYears",))
    resolved = resolver.resolve(group, items, {"workYears": 3, "baseSalary": 8000})
    resolved.components["PerformanceBonus"]
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from payroll_engines.formula import FormulaEvaluator
from payroll_engines.tracer import traced_engine
from payroll_kernel.domain.dtos import SalaryGroup, SalaryGroupMember, SalaryItem
from payroll_kernel.exceptions import (
    CircularReferenceError,
    DuplicateOrderError,
    FormulaSyntaxError,
    InvalidOrderingError,
    InvalidSalaryItemError,
    SalaryGroupValidationError,
    SalaryItemNotFoundError,
    UnknownVariableError,
)
from payroll_kernel.logging_config import get_logger

logger = get_logger("engines.salary_items")


class IssueKind(str, Enum):
    """Kinds of salary group configuration problems."""

    MISSING_ITEM = "missing_item"
    DUPLICATE_ORDER = "duplicate_order"
    DUPLICATE_NAME = "duplicate_name"
    SYNTAX_ERROR = "syntax_error"
    UNKNOWN_VARIABLE = "unknown_variable"
    CIRCULAR_REFERENCE = "circular_reference"
    INVALID_ORDERING = "invalid_ordering"


@dataclass(frozen=True)
class SalaryGroupIssue:
    """One problem found while validating a salary group."""

    kind: IssueKind
    item_name: str
    message: str
    referenced_name: str | None = None
    error: Exception | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class DependencyGraph:
    """
    Reference graph of a salary group.

    ``edges[name]`` is the set of member names that ``name`` reads.
    ``orders[name]`` is the member's calculation order.
    """

    orders: Mapping[str, int]
    edges: Mapping[str, frozenset[str]]

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as ``[a, b, ..., a]``, or None when acyclic."""
        order = self._kahn()
        if len(order) == len(self.orders):
            return None
        remaining = set(self.orders) - set(order)
        # Walk dependencies inside the remaining subgraph until a node repeats
        start = min(remaining, key=lambda n: self.orders[n])
        path: list[str] = []
        seen: dict[str, int] = {}
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(
                (d for d in self._dependencies(node) if d in remaining),
                key=lambda n: self.orders[n],
            )
        return path[seen[node]:] + [node]

    def topological_order(self) -> tuple[str, ...]:
        """Dependencies first; ties broken by calculation order.

        Raises:
            CircularReferenceError: If the graph has a cycle.
        """
        order = self._kahn()
        if len(order) != len(self.orders):
            raise CircularReferenceError(self.find_cycle() or [])
        return tuple(order)

    def _dependencies(self, name: str) -> list[str]:
        return [d for d in self.edges.get(name, ()) if d in self.orders]

    def _kahn(self) -> list[str]:
        in_degree = {name: len(self._dependencies(name)) for name in self.orders}
        dependents: dict[str, list[str]] = {name: [] for name in self.orders}
        for name in self.orders:
            for dep in self._dependencies(name):
                dependents[dep].append(name)

        ready = deque(sorted(
            (n for n, d in in_degree.items() if d == 0),
            key=lambda n: self.orders[n],
        ))
        result: list[str] = []
        while ready:
            name = ready.popleft()
            result.append(name)
            released = []
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            for dependent in sorted(released, key=lambda n: self.orders[n]):
                ready.append(dependent)
        return result


@dataclass(frozen=True)
class ResolvedSalary:
    """Output of SalaryItemResolver.resolve."""

    components: Mapping[str, Decimal]
    total: Decimal
    taxable_total: Decimal

    @property
    def component_count(self) -> int:
        return len(self.components)


def _index_items(items: Mapping[UUID, SalaryItem] | Iterable[SalaryItem]) -> dict[UUID, SalaryItem]:
    if isinstance(items, Mapping):
        return dict(items)
    return {item.id: item for item in items}


class SalaryItemResolver:
    """
    Orders and evaluates the members of a salary group.

    Contract:
        ``resolve`` validates the whole group first and raises the first
        issue as its FormulaError / ConfigurationError; only then are items
        evaluated in ascending calculation order, each seeing the context
        variables plus every earlier component.  At resolve time only the
        variables actually present in the context are known: a configured
        variable the caller left out is an unknown variable.
    """

    def __init__(
        self,
        evaluator: FormulaEvaluator | None = None,
        context_variables: Iterable[str] = (),
        decimal_places: int = 2,
    ):
        self._evaluator = evaluator or FormulaEvaluator()
        self._context_variables = frozenset(context_variables)
        self._quantum = Decimal(1).scaleb(-decimal_places)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _members_with_items(
        self,
        group: SalaryGroup,
        items: Mapping[UUID, SalaryItem],
    ) -> tuple[list[tuple[SalaryGroupMember, SalaryItem]], list[SalaryGroupIssue]]:
        pairs: list[tuple[SalaryGroupMember, SalaryItem]] = []
        issues: list[SalaryGroupIssue] = []
        for member in group.ordered_members():
            item = items.get(member.salary_item_id)
            if item is None:
                issues.append(SalaryGroupIssue(
                    kind=IssueKind.MISSING_ITEM,
                    item_name=str(member.salary_item_id),
                    message=f"Salary item {member.salary_item_id} does not exist",
                    error=SalaryItemNotFoundError(member.salary_item_id),
                ))
                continue
            pairs.append((member, item))
        return pairs, issues

    def build_dependency_graph(
        self,
        group: SalaryGroup,
        items: Mapping[UUID, SalaryItem] | Iterable[SalaryItem],
    ) -> DependencyGraph:
        """Graph of member-to-member references (context variables excluded).

        Raises:
            FormulaSyntaxError: If a member's formula cannot be parsed.
        """
        pairs, _ = self._members_with_items(group, _index_items(items))
        orders = {item.name: member.calculation_order for member, item in pairs}
        edges = {
            item.name: frozenset(
                ref for ref in self._evaluator.references(item) if ref in orders
            )
            for _, item in pairs
        }
        return DependencyGraph(orders=orders, edges=edges)

    def find_issues(
        self,
        group: SalaryGroup,
        items: Mapping[UUID, SalaryItem] | Iterable[SalaryItem],
        context_variables: Iterable[str] = (),
        include_configured: bool = True,
    ) -> list[SalaryGroupIssue]:
        """Every configuration problem in the group; empty means valid.

        ``include_configured=False`` restricts known context variables to
        ``context_variables``.
        """
        known_context = frozenset(context_variables)
        if include_configured:
            known_context |= self._context_variables
        pairs, issues = self._members_with_items(group, _index_items(items))

        by_order: dict[int, list[str]] = {}
        by_name: dict[str, int] = {}
        for member, item in pairs:
            by_order.setdefault(member.calculation_order, []).append(item.name)
            if item.name in by_name:
                issues.append(SalaryGroupIssue(
                    kind=IssueKind.DUPLICATE_NAME,
                    item_name=item.name,
                    message=f"Salary item name '{item.name}' appears more than once",
                    error=InvalidSalaryItemError(item.name, "name appears more than once in the group"),
                ))
            by_name[item.name] = member.calculation_order
        for order, names in sorted(by_order.items()):
            if len(names) > 1:
                issues.append(SalaryGroupIssue(
                    kind=IssueKind.DUPLICATE_ORDER,
                    item_name=names[0],
                    message=f"Calculation order {order} is shared by {', '.join(names)}",
                    error=DuplicateOrderError(order, names),
                ))

        edges: dict[str, frozenset[str]] = {}
        for member, item in pairs:
            try:
                refs = self._evaluator.references(item)
            except FormulaSyntaxError as e:
                issues.append(SalaryGroupIssue(
                    kind=IssueKind.SYNTAX_ERROR,
                    item_name=item.name,
                    message=f"Salary item '{item.name}': {e}",
                    error=e,
                ))
                continue
            member_refs = set()
            for ref in sorted(refs):
                if ref in by_name:
                    member_refs.add(ref)
                    ref_order = by_name[ref]
                    if ref_order >= member.calculation_order:
                        issues.append(SalaryGroupIssue(
                            kind=IssueKind.INVALID_ORDERING,
                            item_name=item.name,
                            referenced_name=ref,
                            message=(
                                f"Salary item '{item.name}' (order {member.calculation_order}) "
                                f"references '{ref}' (order {ref_order})"
                            ),
                            error=InvalidOrderingError(
                                item.name, member.calculation_order, ref, ref_order,
                            ),
                        ))
                elif ref not in known_context:
                    issues.append(SalaryGroupIssue(
                        kind=IssueKind.UNKNOWN_VARIABLE,
                        item_name=item.name,
                        referenced_name=ref,
                        message=f"Salary item '{item.name}' references unknown variable '{ref}'",
                        error=UnknownVariableError(ref, item.name),
                    ))
            edges[item.name] = frozenset(member_refs)

        graph = DependencyGraph(
            orders={name: order for name, order in by_name.items() if name in edges},
            edges=edges,
        )
        cycle = graph.find_cycle()
        if cycle:
            issues.append(SalaryGroupIssue(
                kind=IssueKind.CIRCULAR_REFERENCE,
                item_name=cycle[0],
                message="Circular reference: " + " -> ".join(cycle),
                error=CircularReferenceError(cycle),
            ))
        return issues

    def validate(
        self,
        group: SalaryGroup,
        items: Mapping[UUID, SalaryItem] | Iterable[SalaryItem],
        context_variables: Iterable[str] = (),
        include_configured: bool = True,
    ) -> None:
        """Raise the most fundamental issue found, if any.

        Priority: missing item, duplicate name, duplicate order, syntax,
        unknown variable, cycle, ordering.
        """
        issues = self.find_issues(group, items, context_variables, include_configured)
        if not issues:
            return
        priority = [
            IssueKind.MISSING_ITEM,
            IssueKind.DUPLICATE_NAME,
            IssueKind.DUPLICATE_ORDER,
            IssueKind.SYNTAX_ERROR,
            IssueKind.UNKNOWN_VARIABLE,
            IssueKind.CIRCULAR_REFERENCE,
            IssueKind.INVALID_ORDERING,
        ]
        for kind in priority:
            for issue in issues:
                if issue.kind == kind and issue.error is not None:
                    logger.warning(
                        "salary_group_invalid",
                        extra={
                            "group_name": group.name,
                            "issue_kind": issue.kind.value,
                            "issue_count": len(issues),
                        },
                    )
                    raise issue.error
        raise SalaryGroupValidationError(group.name, issues)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    @traced_engine("salary_items", "1.0", fingerprint_fields=("context",))
    def resolve(
        self,
        group: SalaryGroup,
        items: Mapping[UUID, SalaryItem] | Sequence[SalaryItem],
        context: Mapping[str, Any] | None = None,
    ) -> ResolvedSalary:
        """Validate then evaluate every member in calculation order."""
        context = dict(context or {})
        indexed = _index_items(items)
        self.validate(
            group, indexed, context_variables=context.keys(), include_configured=False,
        )

        environment: dict[str, Decimal] = {
            name: value if isinstance(value, Decimal) else Decimal(str(value))
            for name, value in context.items()
        }
        components: dict[str, Decimal] = {}
        total = Decimal("0")
        taxable_total = Decimal("0")

        for member in group.ordered_members():
            item = indexed[member.salary_item_id]
            value = self._evaluator.evaluate(item, environment).quantize(
                self._quantum, rounding=ROUND_HALF_UP,
            )
            components[item.name] = value
            environment[item.name] = value
            total += value
            if item.is_taxable:
                taxable_total += value

        logger.info(
            "salary_components_resolved",
            extra={
                "group_name": group.name,
                "component_count": len(components),
                "total": str(total),
            },
        )
        return ResolvedSalary(
            components=components,
            total=total,
            taxable_total=taxable_total,
        )
