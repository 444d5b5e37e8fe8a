# sharedmodel/merge/diff_engine.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sharedmodel.core.schemas import DiffMap, DiffType, State, Widget
from sharedmodel.core.state_tree import collapse_home, index_of_same_widget, iter_states

logger = logging.getLogger(__name__)


def annotate_diff(before: Optional[State], after: Optional[State]) -> None:
    """
    Record on `after` how each of its widgets relates to `before`.

    Every widget of `after` is tagged NO_CHANGES when a structurally equal
    widget is still unmatched in `before` (first match wins, each before
    widget matches once) and CREATED otherwise. Unmatched before widgets are
    tagged DELETED under their own id. Matched pairs are compared again one
    level down, so the whole tree below `after` gets annotated.

    `before` is only read. The annotation lives in after's metadata until
    the merge strips it.
    """
    if after is None:
        return

    remaining: List[Widget] = list(before.widgets) if before is not None else []
    diff = DiffMap()

    for widget in after.widgets:
        idx = index_of_same_widget(widget, remaining)
        prev_next: Optional[State] = None
        if idx >= 0:
            diff[widget.id] = DiffType.NO_CHANGES
            prev_next = remaining.pop(idx).next_state
        else:
            diff[widget.id] = DiffType.CREATED

        annotate_diff(collapse_home(prev_next), collapse_home(widget.next_state))

    for gone in remaining:
        if gone.id in diff:
            logger.warning(
                "[DIFF] state=%s widget=%s was both kept and deleted, recording DELETED", after.id, gone.id
            )
        diff[gone.id] = DiffType.DELETED

    after.set_diff(diff)
    logger.debug("[DIFF] state=%s annotated=%d", after.id, len(diff))


def diff_summary(root: Optional[State]) -> Dict[str, int]:
    """Counts of each diff type over the whole annotated tree."""
    counts = {t.value: 0 for t in DiffType}
    for st in iter_states(root):
        for _, dt in st.diff.items():
            key = dt.value if isinstance(dt, DiffType) else str(dt)
            counts[key] = counts.get(key, 0) + 1
    return counts
