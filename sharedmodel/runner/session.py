# sharedmodel/runner/session.py
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sharedmodel.core.schemas import SessionContext, SessionPath, State, home_state
from sharedmodel.core.state_tree import deep_copy
from sharedmodel.merge.diff_engine import annotate_diff, diff_summary
from sharedmodel.merge.merge_engine import MergeEngine, MergeReport
from sharedmodel.runner.store import SharedModelStore

logger = logging.getLogger(__name__)


def merge_paths(existing: Sequence[SessionPath], new: Sequence[SessionPath]) -> List[SessionPath]:
    out = list(existing)
    seen = {p.id for p in out}
    for p in new:
        if p.id in seen:
            continue
        seen.add(p.id)
        out.append(p)
    return out


class SessionRunner:
    """
    One tester's capture session against a product's shared model.

    load_state() at session start hands out the tree to capture into and
    keeps a private snapshot of it. save_state() at session end diffs the
    captured tree against that snapshot, merges it into whatever shared
    model is on disk by then, and writes the result.
    """

    def __init__(self, store: SharedModelStore, ctx: SessionContext) -> None:
        self.store = store
        self.ctx = ctx
        self.snapshot: Optional[State] = None
        self.properties: Dict[str, Any] = {}
        self.last_report: Optional[MergeReport] = None

    @property
    def shared_model_path(self) -> Path:
        return self.store.shared_model_path(self.ctx.product)

    def load_state(self) -> State:
        self.snapshot = None
        self.properties = self.store.load_properties(self.ctx.product)

        model = self.store.load_model(self.shared_model_path)
        if model is None:
            state = home_state()
            self.store.save_model(self.shared_model_path, state, product=self.ctx.product)
            return state

        self.snapshot = deep_copy(model.state)
        logger.info("[SESSION] product=%s tester=%s loaded root=%s", self.ctx.product, self.ctx.tester, model.state.id)
        return model.state

    def save_state(
        self,
        session_tree: State,
        *,
        paths: Sequence[SessionPath] = (),
        when: Optional[datetime] = None,
    ) -> bool:
        annotate_diff(self.snapshot, session_tree)
        logger.info("[SESSION] product=%s diff=%s", self.ctx.product, diff_summary(session_tree))

        current = self.store.load_model(self.shared_model_path)
        engine = MergeEngine()
        merged = engine.merge(current.state if current is not None else None, session_tree)
        self.last_report = engine.report

        all_paths = merge_paths(current.paths if current is not None else [], paths)
        if not self.store.save_model(self.shared_model_path, merged, product=self.ctx.product, paths=all_paths):
            return False

        session_path = self.store.session_model_path(self.ctx.product, when)
        if not self.store.save_model(session_path, session_tree, product=self.ctx.product, paths=paths):
            return False

        return self.store.save_properties(self.ctx.product, self.properties)

    def products(self) -> List[str]:
        return self.store.products()
