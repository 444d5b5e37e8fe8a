from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

WidgetId = str
StateId = str

HOME_STATE_ID: StateId = "0"
HOME_BOOKMARK = "Home"

# reserved metadata keys
META_DATA_DIFF = "multi-user-diff-widgets"
DELETED_AT = "multi-user-merge-deleted-at"
MATCHING_WIDGET = "matching_widget"
NEIGHBORS = "neighbors"

# keys compared by same_widget
MATCHING_HINT_KEYS: Tuple[str, ...] = ("href", "xpath", "text", "tag", "class")


class WidgetType(str, Enum):
    ACTION = "ACTION"
    CHECK = "CHECK"
    ISSUE = "ISSUE"


class WidgetSubtype(str, Enum):
    LEFT_CLICK_ACTION = "LEFT_CLICK_ACTION"
    RIGHT_CLICK_ACTION = "RIGHT_CLICK_ACTION"
    DOUBLE_CLICK_ACTION = "DOUBLE_CLICK_ACTION"
    LONG_CLICK_ACTION = "LONG_CLICK_ACTION"
    TYPE_ACTION = "TYPE_ACTION"
    DRAG_ACTION = "DRAG_ACTION"
    MOVE_ACTION = "MOVE_ACTION"
    SELECT_ACTION = "SELECT_ACTION"
    GO_HOME_ACTION = "GO_HOME_ACTION"
    PASTE_ACTION = "PASTE_ACTION"
    TEXT_CHECK = "TEXT_CHECK"
    IMAGE_CHECK = "IMAGE_CHECK"
    NUMBER_CHECK = "NUMBER_CHECK"


class WidgetStatus(str, Enum):
    UNLOCATED = "UNLOCATED"
    LOCATED = "LOCATED"
    VALID = "VALID"
    RESOLVED = "RESOLVED"


class WidgetVisibility(str, Enum):
    HIDDEN = "HIDDEN"
    SUGGESTION = "SUGGESTION"
    VISIBLE = "VISIBLE"


class DiffType(str, Enum):
    CREATED = "CREATED"
    DELETED = "DELETED"
    CHANGED = "CHANGED"  # reserved, never produced by the diff engine
    NO_CHANGES = "NO_CHANGES"


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int


class DiffMap:
    """
    Per-state change annotation: widget id -> DiffType.

    Insertion order is kept, it is the order the merge engine replays.
    Values that did not parse as a DiffType are kept as raw strings so a
    newer writer's annotations survive a round trip through older code.
    """

    def __init__(self, items: Optional[Dict[WidgetId, Union[DiffType, str]]] = None) -> None:
        self._items: Dict[WidgetId, Union[DiffType, str]] = dict(items or {})

    def __setitem__(self, widget_id: WidgetId, diff_type: Union[DiffType, str]) -> None:
        self._items[widget_id] = diff_type

    def __getitem__(self, widget_id: WidgetId) -> Union[DiffType, str]:
        return self._items[widget_id]

    def __contains__(self, widget_id: object) -> bool:
        return widget_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[WidgetId]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DiffMap):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"DiffMap({self._items!r})"

    def get(self, widget_id: WidgetId) -> Optional[Union[DiffType, str]]:
        return self._items.get(widget_id)

    def items(self) -> List[Tuple[WidgetId, Union[DiffType, str]]]:
        return list(self._items.items())

    def copy(self) -> "DiffMap":
        return DiffMap(self._items)

    def to_strings(self) -> Dict[str, str]:
        return {k: (v.value if isinstance(v, DiffType) else str(v)) for k, v in self._items.items()}


class MatchRef:
    """
    Non-owning link to a widget judged structurally equal in a parallel tree.

    Only the id is authoritative. By default the target object is held
    weakly and may be gone, for example after the other tree was discarded
    or reloaded. hold=True keeps the target alive with the link; the codec
    uses it for counterparts that exist only in a document's widget catalog,
    so a decoded tree can be written back with them on its own.
    """

    __slots__ = ("widget_id", "_ref", "_held")

    def __init__(self, widget_id: WidgetId, target: Optional["Widget"] = None, *, hold: bool = False) -> None:
        self.widget_id = widget_id
        self._ref = weakref.ref(target) if target is not None else None
        self._held = target if hold else None

    @property
    def held(self) -> bool:
        return self._held is not None

    @property
    def target(self) -> Optional["Widget"]:
        return self._ref() if self._ref is not None else None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MatchRef):
            return NotImplemented
        return self.widget_id == other.widget_id

    def __hash__(self) -> int:
        return hash(self.widget_id)

    def __str__(self) -> str:
        return self.widget_id

    def __repr__(self) -> str:
        return f"MatchRef({self.widget_id!r})"


@dataclass(eq=False)
class Widget:
    """
    One interactive element discovered in a state.

    Compared by identity. Structural equality is state_tree.same_widget.
    """
    id: WidgetId
    text: Optional[str] = None
    weight: float = 0.0
    type: WidgetType = WidgetType.ACTION
    subtype: WidgetSubtype = WidgetSubtype.LEFT_CLICK_ACTION
    status: WidgetStatus = WidgetStatus.LOCATED
    visibility: WidgetVisibility = WidgetVisibility.VISIBLE

    created_date: Optional[datetime] = None
    reported_date: Optional[datetime] = None
    resolved_date: Optional[datetime] = None

    created_by: Optional[str] = None
    created_by_plugin: Optional[str] = None
    reported_by: Optional[str] = None
    comment: Optional[str] = None
    reported_text: Optional[str] = None
    resolved_text: Optional[str] = None

    location: Optional[Rect] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    # child link, owned
    next_state: Optional["State"] = None

    def __repr__(self) -> str:
        nxt = self.next_state.id if self.next_state is not None else None
        return f"Widget(id={self.id!r}, subtype={self.subtype.value}, next_state={nxt!r})"

    @property
    def matching_widget(self) -> Optional[MatchRef]:
        ref = self.metadata.get(MATCHING_WIDGET)
        return ref if isinstance(ref, MatchRef) else None

    def set_matching_widget(self, other: Optional["Widget"]) -> None:
        if other is None:
            self.metadata.pop(MATCHING_WIDGET, None)
            return
        self.metadata[MATCHING_WIDGET] = MatchRef(other.id, other)


@dataclass(eq=False)
class State:
    id: StateId
    bookmark: Optional[str] = None
    widgets: List[Widget] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    product_versions: List[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"State(id={self.id!r}, bookmark={self.bookmark!r}, widgets={[w.id for w in self.widgets]!r})"

    def is_home(self) -> bool:
        return self.id == HOME_STATE_ID

    def widget(self, widget_id: WidgetId) -> Optional[Widget]:
        """Direct child lookup, not recursive."""
        for w in self.widgets:
            if w.id == widget_id:
                return w
        return None

    def visible_widgets(self) -> List[Widget]:
        return [w for w in self.widgets if w.visibility == WidgetVisibility.VISIBLE]

    def add_widget(self, widget: Widget) -> None:
        self.widgets.append(widget)

    def remove_widget(self, widget: Widget) -> bool:
        for i, w in enumerate(self.widgets):
            if w is widget:
                del self.widgets[i]
                return True
        return False

    # ---------------- diff annotation ----------------

    @property
    def diff(self) -> DiffMap:
        d = self.metadata.get(META_DATA_DIFF)
        return d if isinstance(d, DiffMap) else DiffMap()

    def set_diff(self, diff: DiffMap) -> None:
        self.metadata[META_DATA_DIFF] = diff

    def clear_diff(self) -> None:
        self.metadata.pop(META_DATA_DIFF, None)


def home_state() -> State:
    return State(id=HOME_STATE_ID, bookmark=HOME_BOOKMARK)


@dataclass
class SessionPath:
    """
    Summary of one completed session walk. Carried through the shared model
    untouched, the merge does not interpret it.
    """
    id: str
    product_version: str = ""
    session_id: str = ""
    session_duration: int = 0
    created_at_ms: Optional[int] = None
    tester: str = ""
    widget_ids: List[WidgetId] = field(default_factory=list)


@dataclass(frozen=True)
class SessionContext:
    """
    Who is capturing what. Passed explicitly wherever product or tester
    information is needed.
    """
    product: str
    product_version: str = ""
    tester: str = ""


@dataclass
class SharedModel:
    """
    A decoded shared-model document.

    `catalog` maps every id of the flat widget catalog to its widget. Matched
    counterparts that are not part of `state` are also held by the
    MatchRef pointing at them, so `state` can be kept and saved alone.
    """
    state: State
    product: str = ""
    last_updated_at_ms: Optional[int] = None
    paths: List[SessionPath] = field(default_factory=list)
    issues: List[WidgetId] = field(default_factory=list)
    catalog: Dict[WidgetId, Widget] = field(default_factory=dict)
