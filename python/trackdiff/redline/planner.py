from typing import List, Optional, Sequence, Set

import structlog

from trackdiff.diff import tokenize
from trackdiff.errors import AlignmentError
from trackdiff.models import DiffOp, DiffOpKind, EditPlan, InsertOp, Side, Token, TokenMap

logger = structlog.get_logger(__name__)


class EditPlanner:
    """
    Merges a diff script with a TokenMap into a declarative EditPlan.

    Pass 1 marks the document tokens consumed by Delete ops. Pass 2 walks the
    surviving tokens against the Equal ops and anchors every Insert op after the
    last surviving token consumed (or at the start of the range). The planner
    never touches the document.
    """

    def plan(self, diff_ops: Sequence[DiffOp], token_map: TokenMap) -> EditPlan:
        deleted = self._plan_deletions(diff_ops, token_map)
        surviving = [t for t in token_map if t.index not in deleted]
        insert_ops = self._plan_insertions(diff_ops, surviving)

        delete_targets = tuple(sorted((token_map[i] for i in deleted), key=lambda t: t.index, reverse=True))
        plan = EditPlan(
            generation=token_map.generation,
            token_count=len(token_map),
            delete_targets=delete_targets,
            insert_ops=tuple(insert_ops),
        )
        plan.validate()

        logger.debug(
            "Edit plan built",
            generation=plan.generation,
            tokens=plan.token_count,
            deletes=len(plan.delete_targets),
            inserts=len(plan.insert_ops),
        )
        return plan

    def _plan_deletions(self, diff_ops: Sequence[DiffOp], token_map: TokenMap) -> Set[int]:
        """Pass 1: token indices consumed by Delete ops."""
        deleted: Set[int] = set()
        cursor = 0
        for op, text in diff_ops:
            if op == DiffOpKind.INSERT:
                continue

            count = len(tokenize(text))
            if cursor + count > len(token_map):
                raise AlignmentError(text, None, len(token_map))

            if op == DiffOpKind.DELETE:
                consumed = [token_map[i] for i in range(cursor, cursor + count)]
                found = "".join(t.text for t in consumed)
                if found != text:
                    # Deleted tokens must spell the op text.
                    raise AlignmentError(text, found, cursor)
                deleted.update(t.index for t in consumed)

            cursor += count
        return deleted

    def _plan_insertions(self, diff_ops: Sequence[DiffOp], surviving: List[Token]) -> List[InsertOp]:
        """Pass 2: lock-step walk of Equal ops over the surviving tokens."""
        insert_ops: List[InsertOp] = []
        position = 0
        last: Optional[Token] = None

        for op, text in diff_ops:
            if op == DiffOpKind.DELETE:
                continue

            if op == DiffOpKind.INSERT:
                side = Side.AFTER if last is not None else Side.BEFORE
                insert_ops.append(InsertOp(anchor=last, side=side, text=text))
                continue

            remaining = text
            while remaining:
                if position >= len(surviving):
                    raise AlignmentError(remaining, None, position)
                token = surviving[position]
                if not remaining.startswith(token.text):
                    raise AlignmentError(remaining, token.text, token.index)
                remaining = remaining[len(token.text) :]
                last = token
                position += 1

        if position < len(surviving):
            token = surviving[position]
            raise AlignmentError("", token.text, token.index)

        return insert_ops
