# sharedmodel/core/state_tree.py
from __future__ import annotations

import copy
import time
from typing import Dict, Iterator, List, Optional, Sequence, Set

from sharedmodel.core.schemas import (
    DELETED_AT,
    MATCHING_HINT_KEYS,
    META_DATA_DIFF,
    DiffMap,
    Rect,
    State,
    Widget,
    WidgetId,
    WidgetType,
)


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------- structural equality ----------------

def _meta_str(value: object) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def has_equal_metadata(key: str, widget: Widget, other: Widget) -> bool:
    """String-form comparison, so "42" and 42 compare equal."""
    return _meta_str(widget.metadata.get(key)) == _meta_str(other.metadata.get(key))


def same_widget(widget: Optional[Widget], other: Optional[Widget]) -> bool:
    """
    True when two widgets denote the same UI element, whatever their ids.

    Compared: subtype, visibility and the matching hints href, xpath, text,
    tag and class. Ids, texts, dates and authors are ignored.
    """
    if widget is None or other is None:
        return False
    if widget.subtype != other.subtype:
        return False
    if widget.visibility != other.visibility:
        return False
    return all(has_equal_metadata(k, widget, other) for k in MATCHING_HINT_KEYS)


def index_of_same_widget(widget: Widget, widgets: Sequence[Widget]) -> int:
    """First match wins. -1 when nothing matches."""
    for i, w in enumerate(widgets):
        if same_widget(widget, w):
            return i
    return -1


def collapse_home(state: Optional[State]) -> Optional[State]:
    if state is None or state.is_home():
        return None
    return state


def next_state_of(widget: Optional[Widget]) -> Optional[State]:
    """The widget's child state, with a link back to home read as no child."""
    if widget is None:
        return None
    return collapse_home(widget.next_state)


def same_tree(state: Optional[State], other: Optional[State]) -> bool:
    if state is None or other is None:
        return state is None and other is None
    if state.id != other.id or state.bookmark != other.bookmark:
        return False
    if len(state.widgets) != len(other.widgets):
        return False
    for w, o in zip(state.widgets, other.widgets):
        if w.id != o.id or not same_widget(w, o):
            return False
        if not same_tree(next_state_of(w), next_state_of(o)):
            return False
    return True


# ---------------- traversal ----------------

def iter_states(root: Optional[State]) -> Iterator[State]:
    """Depth-first, pre-order. Home back-links are not followed."""
    if root is None:
        return
    seen: Set[int] = set()
    stack: List[State] = [root]
    while stack:
        st = stack.pop()
        if id(st) in seen:
            continue
        seen.add(id(st))
        yield st
        children = [next_state_of(w) for w in st.widgets]
        stack.extend(c for c in reversed(children) if c is not None)


def iter_widgets(root: Optional[State]) -> Iterator[Widget]:
    """Every widget reachable from root, in discovery order."""
    for st in iter_states(root):
        yield from st.widgets


def descendant_widgets(widget: Optional[Widget]) -> List[Widget]:
    """All widgets below the widget, not including the widget itself."""
    return list(iter_widgets(next_state_of(widget)))


def find_widget(root: Optional[State], widget_id: WidgetId) -> Optional[Widget]:
    for w in iter_widgets(root):
        if w.id == widget_id:
            return w
    return None


def find_owner_state(root: Optional[State], widget: Widget) -> Optional[State]:
    for st in iter_states(root):
        if any(w is widget for w in st.widgets):
            return st
    return None


def find_state(root: Optional[State], state_id: str) -> Optional[State]:
    for st in iter_states(root):
        if st.id == state_id:
            return st
    return None


def all_issues(root: Optional[State]) -> List[Widget]:
    return [w for w in iter_widgets(root) if w.type == WidgetType.ISSUE]


def strip_diff_annotations(root: Optional[State]) -> None:
    for st in iter_states(root):
        st.metadata.pop(META_DATA_DIFF, None)


# ---------------- deep copy ----------------

class _TreeCloner:
    def __init__(self) -> None:
        self.states: Dict[int, State] = {}
        self.widgets: Dict[int, Widget] = {}

    def clone_state(self, state: State) -> State:
        done = self.states.get(id(state))
        if done is not None:
            if not state.is_home():
                raise ValueError(f"State {state.id!r} is reachable more than once, not a tree")
            return done

        out = State(
            id=state.id,
            bookmark=state.bookmark,
            metadata=self._clone_state_meta(state.metadata),
            product_versions=list(state.product_versions),
        )
        self.states[id(state)] = out
        out.widgets = [self.clone_widget(w) for w in state.widgets]
        return out

    def clone_widget(self, widget: Widget) -> Widget:
        if id(widget) in self.widgets:
            raise ValueError(f"Widget {widget.id!r} is owned by more than one state")

        out = copy.copy(widget)
        out.metadata = dict(widget.metadata)
        self.widgets[id(widget)] = out
        nxt = widget.next_state
        if nxt is None:
            return out
        if nxt.is_home() and id(nxt) not in self.states:
            # link back to a home state outside the copied tree
            out.next_state = None
        else:
            out.next_state = self.clone_state(nxt)
        return out

    @staticmethod
    def _clone_state_meta(meta: Dict[str, object]) -> Dict[str, object]:
        out = dict(meta)
        for k, v in meta.items():
            if isinstance(v, DiffMap):
                out[k] = v.copy()
        return out

    def repoint_matches(self) -> None:
        for clone in self.widgets.values():
            ref = clone.matching_widget
            if ref is None:
                continue
            target = ref.target
            if target is not None and id(target) in self.widgets:
                clone.set_matching_widget(self.widgets[id(target)])


def deep_copy(state: Optional[State]) -> Optional[State]:
    """
    Independent clone of the whole tree below state.

    Matched-widget links whose target is inside the copied tree are
    re-pointed to the copy of the target, other links are kept as they are.
    Links back to the copied home state point at its copy, links to a home
    state outside the copy are dropped. Raises ValueError when the input is
    not a tree.
    """
    if state is None:
        return None
    cloner = _TreeCloner()
    out = cloner.clone_state(state)
    cloner.repoint_matches()
    return out


def deep_copy_widget(widget: Widget) -> Widget:
    cloner = _TreeCloner()
    out = cloner.clone_widget(widget)
    cloner.repoint_matches()
    return out


# ---------------- tombstones ----------------

def mark_as_deleted(widget: Optional[Widget], at_ms: Optional[int] = None) -> None:
    if widget is None:
        return
    widget.metadata[DELETED_AT] = str(now_ms() if at_ms is None else int(at_ms))


def is_marked_as_deleted(widget: Optional[Widget]) -> bool:
    if widget is None:
        return False
    raw = widget.metadata.get(DELETED_AT)
    if raw is None:
        return False
    try:
        return int(str(raw)) > 0
    except ValueError:
        return False


def purge_deleted(root: Optional[State]) -> List[Widget]:
    """Remove tombstoned widgets from their states. Returns what was removed."""
    removed: List[Widget] = []
    for st in list(iter_states(root)):
        keep = []
        for w in st.widgets:
            if is_marked_as_deleted(w):
                removed.append(w)
            else:
                keep.append(w)
        st.widgets = keep
    return removed


def deleted_locations(state: Optional[State]) -> List[Rect]:
    """Screen rectangles of the tombstoned widgets of one state."""
    if state is None:
        return []
    return [w.location for w in state.widgets if is_marked_as_deleted(w) and w.location is not None]
