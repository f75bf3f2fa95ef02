"""
SEQUENCE INVARIANT ENGINE

Pure checks over the clauses of one agreement:
1. point_num uniqueness (case-sensitive, exact)
2. Swap reorder: move a clause one step by exchanging sequence_no with its
   immediate neighbour in the sequence-sorted list
3. Explicit target sequence_no: swap with the holder, or assign if unused
4. Pairwise-distinct sequence_no check

Functions take plain clause dicts ({"_id"/"id", "point_num", "sequence_no", ...})
and return a plan: the (clause_id, new_sequence_no) writes that must commit
together. Storage is applied by ClauseService.
"""

from typing import Any, Dict, Iterable, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from core.billing_errors import BillingValidationError, InvalidStateError, EntityNotFoundError


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass
class SequenceAssignment:
    clause_id: str
    old_sequence_no: int
    new_sequence_no: int


@dataclass
class ReorderPlan:
    """Writes that must be applied as one atomic unit."""
    assignments: List[SequenceAssignment] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.assignments

    def clause_ids(self) -> List[str]:
        return [a.clause_id for a in self.assignments]


def _clause_id(clause: Dict[str, Any]) -> str:
    return str(clause.get("_id", clause.get("id")))


def sort_by_sequence(clauses: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(clauses, key=lambda c: (c["sequence_no"], _clause_id(c)))


def check_point_num_unique(
    clauses: Iterable[Dict[str, Any]],
    point_num: str,
    exclude_clause_id: Optional[str] = None
) -> None:
    """Raise BillingValidationError when another clause already uses point_num."""
    for clause in clauses:
        if exclude_clause_id is not None and _clause_id(clause) == str(exclude_clause_id):
            continue
        if clause.get("point_num") == point_num:
            raise BillingValidationError(
                f"Point number '{point_num}' already exists for this agreement",
                {"point_num": point_num, "existing_clause_id": _clause_id(clause)}
            )


def check_sequence_distinct(clauses: Iterable[Dict[str, Any]]) -> None:
    seen: Dict[int, str] = {}
    for clause in clauses:
        seq = clause["sequence_no"]
        if seq in seen:
            raise BillingValidationError(
                f"Sequence number {seq} is used by more than one clause",
                {"sequence_no": seq, "clause_ids": [seen[seq], _clause_id(clause)]}
            )
        seen[seq] = _clause_id(clause)


def _find_index(ordered: List[Dict[str, Any]], clause_id: str) -> int:
    for i, clause in enumerate(ordered):
        if _clause_id(clause) == str(clause_id):
            return i
    raise EntityNotFoundError("Clause", str(clause_id))


def _swap(a: Dict[str, Any], b: Dict[str, Any]) -> ReorderPlan:
    return ReorderPlan(assignments=[
        SequenceAssignment(_clause_id(a), a["sequence_no"], b["sequence_no"]),
        SequenceAssignment(_clause_id(b), b["sequence_no"], a["sequence_no"]),
    ])


def plan_swap(
    clauses: Iterable[Dict[str, Any]],
    clause_id: str,
    direction: Direction
) -> ReorderPlan:
    """
    Transpose a clause with its neighbour.

    Moving the first clause up or the last clause down raises InvalidStateError.
    """
    direction = Direction(direction)
    ordered = sort_by_sequence(clauses)
    i = _find_index(ordered, clause_id)

    if direction == Direction.UP:
        if i == 0:
            raise InvalidStateError(
                "Clause is already first in sequence",
                {"clause_id": str(clause_id), "direction": direction.value}
            )
        neighbour = ordered[i - 1]
    else:
        if i == len(ordered) - 1:
            raise InvalidStateError(
                "Clause is already last in sequence",
                {"clause_id": str(clause_id), "direction": direction.value}
            )
        neighbour = ordered[i + 1]

    return _swap(ordered[i], neighbour)


def plan_sequence_change(
    clauses: Iterable[Dict[str, Any]],
    clause_id: str,
    new_sequence_no: int
) -> ReorderPlan:
    """
    Move a clause to an explicit sequence number.

    If another clause holds new_sequence_no the two exchange numbers,
    otherwise the number is assigned directly.
    """
    if new_sequence_no is None or int(new_sequence_no) < 1:
        raise BillingValidationError(
            "Sequence number must be a positive integer",
            {"new_sequence_no": new_sequence_no}
        )
    new_sequence_no = int(new_sequence_no)

    ordered = sort_by_sequence(clauses)
    target = ordered[_find_index(ordered, clause_id)]
    if target["sequence_no"] == new_sequence_no:
        return ReorderPlan()

    holder = next((c for c in ordered if c["sequence_no"] == new_sequence_no), None)
    if holder is not None:
        return _swap(target, holder)

    return ReorderPlan(assignments=[
        SequenceAssignment(_clause_id(target), target["sequence_no"], new_sequence_no)
    ])


def apply_plan(clauses: Iterable[Dict[str, Any]], plan: ReorderPlan) -> List[Dict[str, Any]]:
    """Copy of clauses with the plan applied. Raises if the result has duplicates."""
    updates = {a.clause_id: a.new_sequence_no for a in plan.assignments}
    result = []
    for clause in clauses:
        copy = dict(clause)
        if _clause_id(copy) in updates:
            copy["sequence_no"] = updates[_clause_id(copy)]
        result.append(copy)
    check_sequence_distinct(result)
    return result


def next_sequence_floor(clauses: Iterable[Dict[str, Any]]) -> int:
    """Highest sequence_no present, used to seed a new agreement counter."""
    return max((c["sequence_no"] for c in clauses), default=0)
