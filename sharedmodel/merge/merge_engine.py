# sharedmodel/merge/merge_engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sharedmodel.core.schemas import META_DATA_DIFF, DiffType, State, Widget, WidgetId
from sharedmodel.core.state_tree import (
    deep_copy,
    deep_copy_widget,
    descendant_widgets,
    index_of_same_widget,
    mark_as_deleted,
    next_state_of,
    now_ms,
    strip_diff_annotations,
)

logger = logging.getLogger(__name__)

REPORTED_TEXT_SEPARATOR = " | "


@dataclass
class MergeReport:
    """What one merge did, for logging and tests."""
    tombstoned: List[WidgetId] = field(default_factory=list)
    coalesced: List[WidgetId] = field(default_factory=list)
    appended: List[WidgetId] = field(default_factory=list)
    skipped: List[WidgetId] = field(default_factory=list)


# ---------------- field merge ----------------

def choose_str_value(value: Optional[str], other: Optional[str]) -> Optional[str]:
    if value is None and other is None:
        return None
    if value and other:
        return f"{value}{REPORTED_TEXT_SEPARATOR}{other}"
    if other:
        return other
    return value


def merge_into(target: Widget, changed: Widget) -> None:
    """
    Fold the fields of `changed` into `target`.

    Last writer wins for metadata, type, report dates and resolved text.
    Reported texts are concatenated when both sides have one.
    """
    logger.info("[MERGE] fold widget=%s into widget=%s", changed.id, target.id)
    for k, v in changed.metadata.items():
        target.metadata[k] = v

    target.type = changed.type
    target.reported_text = choose_str_value(target.reported_text, changed.reported_text)
    target.reported_date = changed.reported_date
    target.resolved_date = changed.resolved_date
    target.resolved_text = changed.resolved_text


# ---------------- tree merge ----------------

class MergeEngine:
    """
    Folds a diff-annotated session tree into a copy of the shared tree.

    The session tree must have been annotated with annotate_diff against its
    own session-start snapshot. Neither input is modified.
    """

    def __init__(self, *, deleted_at_ms: Optional[int] = None) -> None:
        self.deleted_at_ms = deleted_at_ms
        self.report = MergeReport()
        self._stamp: Optional[int] = None

    def merge(self, shared: Optional[State], session: Optional[State]) -> State:
        if shared is None and session is None:
            raise ValueError("merge needs a shared tree, a session tree, or both")

        self.report = MergeReport()
        if shared is None:
            result = deep_copy(session)
        elif session is None:
            result = deep_copy(shared)
        else:
            result = deep_copy(shared)
            # one tombstone time per merge call
            self._stamp = self.deleted_at_ms if self.deleted_at_ms is not None else now_ms()
            self._fold(result, session)

        strip_diff_annotations(result)
        logger.info(
            "[MERGE] done root=%s tombstoned=%d coalesced=%d appended=%d",
            result.id, len(self.report.tombstoned), len(self.report.coalesced), len(self.report.appended),
        )
        return result

    def _fold(self, shared: Optional[State], session: Optional[State]) -> None:
        if session is None:
            return
        if shared is None:
            logger.info("[MERGE] no shared state to merge session state=%s into", session.id)
            return

        for key, value in session.metadata.items():
            if key == META_DATA_DIFF or shared.metadata.get(key) is not None:
                continue
            shared.metadata[key] = value

        diff = session.diff
        if not len(diff):
            logger.info("[MERGE] session state=%s has no diff annotations", session.id)
            return

        for widget_id, diff_type in diff.items():
            if diff_type == DiffType.DELETED:
                self._merge_deletion(shared, widget_id)
            elif diff_type == DiffType.CREATED:
                self._merge_creation(shared, session, widget_id)
            elif diff_type == DiffType.NO_CHANGES:
                self._merge_no_change(shared, session, widget_id)
            else:
                label = diff_type.value if isinstance(diff_type, DiffType) else diff_type
                logger.warning("[MERGE] diff type %s for widget=%s has no merge strategy", label, widget_id)
                self.report.skipped.append(widget_id)

    def _merge_deletion(self, shared: State, widget_id: WidgetId) -> None:
        widget = shared.widget(widget_id)
        if widget is None:
            logger.info("[MERGE] deleted widget=%s not in shared state=%s", widget_id, shared.id)
            return

        below = descendant_widgets(widget)
        for w in [widget] + below:
            mark_as_deleted(w, self._stamp)
            self.report.tombstoned.append(w.id)
        logger.info("[MERGE] tombstoned widget=%s and %d below it", widget_id, len(below))

    def _merge_creation(self, shared: State, session: State, widget_id: WidgetId) -> None:
        created = session.widget(widget_id)
        if created is None:
            logger.warning("[MERGE] created widget=%s missing from session state=%s", widget_id, session.id)
            return

        idx = index_of_same_widget(created, shared.widgets)
        if idx >= 0:
            existing = shared.widgets[idx]
            merge_into(existing, created)
            self.report.coalesced.append(existing.id)
            self._fold(next_state_of(existing), next_state_of(created))
            return

        shared.add_widget(deep_copy_widget(created))
        self.report.appended.append(created.id)

    def _merge_no_change(self, shared: State, session: State, widget_id: WidgetId) -> None:
        self._fold(next_state_of(shared.widget(widget_id)), next_state_of(session.widget(widget_id)))


def merge(shared: Optional[State], session: Optional[State], *, deleted_at_ms: Optional[int] = None) -> State:
    return MergeEngine(deleted_at_ms=deleted_at_ms).merge(shared, session)
