# sharedmodel/codec/state_codec.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Type, TypeVar

from sharedmodel.core.schemas import (
    META_DATA_DIFF,
    MATCHING_WIDGET,
    NEIGHBORS,
    DiffMap,
    DiffType,
    MatchRef,
    Rect,
    SessionPath,
    SharedModel,
    State,
    Widget,
    WidgetId,
    WidgetStatus,
    WidgetSubtype,
    WidgetType,
    WidgetVisibility,
)
from sharedmodel.core.state_tree import all_issues, next_state_of, now_ms

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

# widget metadata keys that never leave the process
_TRANSIENT_WIDGET_KEYS = {NEIGHBORS}

E = TypeVar("E", bound=Enum)


class TreeDecodeError(ValueError):
    """
    A stored document does not describe a valid tree.

    path points at the offending element, e.g. state/visible-widgets/0/next-state.
    """

    def __init__(self, message: str, *, path: str = "", widget_id: Optional[str] = None) -> None:
        self.path = path
        self.widget_id = widget_id
        where = f" at {path}" if path else ""
        which = f" (widget {widget_id})" if widget_id else ""
        super().__init__(f"{message}{where}{which}")


@dataclass(frozen=True)
class DecodeOptions:
    max_depth: int = 512


# ---------------- scalar helpers ----------------

def datetime_to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // _ONE_MS


def ms_to_datetime(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def _parse_ms(raw: Any) -> Optional[datetime]:
    if isinstance(raw, bool) or not isinstance(raw, int):
        return None
    return ms_to_datetime(raw)


def _opt_str(raw: Any) -> Optional[str]:
    return None if raw is None else str(raw)


def _parse_enum(enum_cls: Type[E], raw: Any, *, field_name: str, path: str, widget_id: Optional[str]) -> E:
    if not isinstance(raw, str):
        raise TreeDecodeError(f"Missing {field_name}", path=path, widget_id=widget_id)
    try:
        return enum_cls[raw]
    except KeyError:
        raise TreeDecodeError(f"Unknown {field_name} {raw!r}", path=path, widget_id=widget_id) from None


# ---------------- encode ----------------

def location_to_dict(rect: Optional[Rect]) -> Optional[Dict[str, str]]:
    if rect is None:
        return None
    return {
        "x": str(rect.x),
        "y": str(rect.y),
        "width": str(rect.width),
        "height": str(rect.height),
    }


def widget_metadata_to_dict(widget: Widget) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in widget.metadata.items():
        if k in _TRANSIENT_WIDGET_KEYS or v is None:
            continue
        if k == MATCHING_WIDGET:
            out[k] = v.widget_id if isinstance(v, MatchRef) else str(v)
            continue
        out[k] = str(v)
    return out


def widget_to_dict(widget: Widget) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": widget.id,
        "text": widget.text,
        "weight": widget.weight,
        "type": widget.type.name,
        "subtype": widget.subtype.name,
        "status": widget.status.name,
    }
    if widget.created_date is not None:
        obj["created-date-ms"] = datetime_to_ms(widget.created_date)
    if widget.resolved_date is not None:
        obj["resolved-date-ms"] = datetime_to_ms(widget.resolved_date)
    if widget.reported_date is not None:
        obj["reported-date-ms"] = datetime_to_ms(widget.reported_date)

    obj["created-by"] = widget.created_by
    obj["created-by-plugin"] = widget.created_by_plugin
    obj["comment"] = widget.comment
    obj["reported-text"] = widget.reported_text
    obj["reported-by"] = widget.reported_by
    if widget.resolved_text is not None:
        obj["resolved-text"] = widget.resolved_text
    obj["meta-data"] = widget_metadata_to_dict(widget)
    obj["visibility"] = widget.visibility.name
    obj["location"] = location_to_dict(widget.location)
    return obj


def state_metadata_to_dict(state: State) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in state.metadata.items():
        if k == META_DATA_DIFF or v is None:
            continue
        out[k] = str(v)
    diff = state.metadata.get(META_DATA_DIFF)
    if isinstance(diff, DiffMap):
        out[META_DATA_DIFF] = diff.to_strings()
    return out


def state_tree_to_dict(
    state: State,
    catalog: Dict[WidgetId, Widget],
    _path: Optional[Set[int]] = None,
) -> Dict[str, Any]:
    """
    Nested encoding of the tree below state. Each widget appears as its id
    plus the nested encoding of its next state; full widget records are
    collected into catalog, first occurrence wins.
    """
    on_path = _path if _path is not None else set()
    if id(state) in on_path:
        raise ValueError(f"State {state.id!r} is its own descendant")
    on_path.add(id(state))

    visible: List[Dict[str, Any]] = []
    for w in state.widgets:
        catalog.setdefault(w.id, w)
        nxt = next_state_of(w)
        visible.append({
            "id": w.id,
            "next-state": state_tree_to_dict(nxt, catalog, on_path) if nxt is not None else None,
        })

    on_path.discard(id(state))
    return {
        "state-id": state.id,
        "product-version": list(state.product_versions),
        "bookmarks": state.bookmark,
        "visible-widgets": visible,
        "meta-data": state_metadata_to_dict(state),
    }


def path_to_dict(path: SessionPath) -> Dict[str, Any]:
    return {
        "id": path.id,
        "product-version": path.product_version,
        "session-id": path.session_id,
        "session-duration": path.session_duration,
        "created-at-ms": path.created_at_ms,
        "tester": path.tester,
        "widgets": list(path.widget_ids),
    }


def encode_model(
    state: State,
    *,
    product: str = "",
    paths: Sequence[SessionPath] = (),
    updated_at_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Document form of a tree:

      product, last-updated-at-ms, paths, state (nested), issues,
      all-widgets (flat catalog, then matched counterparts not already in it)
    """
    catalog: Dict[WidgetId, Widget] = {}
    state_obj = state_tree_to_dict(state, catalog)

    matched: Dict[WidgetId, Widget] = {}
    for w in catalog.values():
        ref = w.matching_widget
        target = ref.target if ref is not None else None
        if target is None or target.id in catalog:
            continue
        matched.setdefault(target.id, target)

    all_widgets = [widget_to_dict(w) for w in catalog.values()]
    all_widgets.extend(widget_to_dict(w) for w in matched.values())

    return {
        "product": product,
        "last-updated-at-ms": now_ms() if updated_at_ms is None else int(updated_at_ms),
        "paths": [path_to_dict(p) for p in paths],
        "state": state_obj,
        "issues": [w.id for w in all_issues(state)],
        "all-widgets": all_widgets,
    }


# ---------------- decode ----------------

def location_from_dict(raw: Any, *, path: str, widget_id: Optional[str]) -> Optional[Rect]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TreeDecodeError("location must be an object", path=path, widget_id=widget_id)
    try:
        return Rect(
            x=int(raw["x"]),
            y=int(raw["y"]),
            width=int(raw["width"]),
            height=int(raw["height"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise TreeDecodeError(f"Invalid location: {e}", path=path, widget_id=widget_id) from None


def widget_from_dict(obj: Any, *, path: str = "") -> Widget:
    if not isinstance(obj, dict):
        raise TreeDecodeError("Widget entry must be an object", path=path)
    wid = obj.get("id")
    if not isinstance(wid, str) or not wid:
        raise TreeDecodeError("Widget without id", path=path)

    try:
        weight = float(obj.get("weight"))
    except (TypeError, ValueError):
        weight = 0.0

    meta_raw = obj.get("meta-data") or {}
    if not isinstance(meta_raw, dict):
        raise TreeDecodeError("meta-data must be an object", path=f"{path}/meta-data", widget_id=wid)
    metadata: Dict[str, Any] = {}
    for k, v in meta_raw.items():
        if v is None:
            continue
        if k == MATCHING_WIDGET:
            # resolved against the catalog once every widget is known
            metadata[k] = MatchRef(str(v))
            continue
        metadata[str(k)] = str(v)

    return Widget(
        id=wid,
        text=_opt_str(obj.get("text")),
        weight=weight,
        type=_parse_enum(WidgetType, obj.get("type"), field_name="type", path=path, widget_id=wid),
        subtype=_parse_enum(WidgetSubtype, obj.get("subtype"), field_name="subtype", path=path, widget_id=wid),
        status=_parse_enum(WidgetStatus, obj.get("status"), field_name="status", path=path, widget_id=wid),
        visibility=_parse_enum(
            WidgetVisibility, obj.get("visibility"), field_name="visibility", path=path, widget_id=wid
        ),
        created_date=_parse_ms(obj.get("created-date-ms")),
        reported_date=_parse_ms(obj.get("reported-date-ms")),
        resolved_date=_parse_ms(obj.get("resolved-date-ms")),
        created_by=_opt_str(obj.get("created-by")),
        created_by_plugin=_opt_str(obj.get("created-by-plugin")),
        reported_by=_opt_str(obj.get("reported-by")),
        comment=_opt_str(obj.get("comment")),
        reported_text=_opt_str(obj.get("reported-text")),
        resolved_text=_opt_str(obj.get("resolved-text")),
        location=location_from_dict(obj.get("location"), path=f"{path}/location", widget_id=wid),
        metadata=metadata,
    )


def catalog_from_list(raw: Any, *, path: str = "all-widgets") -> Dict[WidgetId, Widget]:
    if not isinstance(raw, list):
        raise TreeDecodeError("Widget catalog must be a list", path=path)
    catalog: Dict[WidgetId, Widget] = {}
    for i, obj in enumerate(raw):
        w = widget_from_dict(obj, path=f"{path}/{i}")
        catalog.setdefault(w.id, w)

    for w in catalog.values():
        ref = w.matching_widget
        if ref is not None:
            w.metadata[MATCHING_WIDGET] = MatchRef(ref.widget_id, catalog.get(ref.widget_id), hold=True)
    return catalog


def _state_metadata_from_dict(raw: Any, *, path: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TreeDecodeError("meta-data must be an object", path=path)
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        if k == META_DATA_DIFF:
            if not isinstance(v, dict):
                raise TreeDecodeError("Diff annotation must be an object", path=f"{path}/{k}")
            diff = DiffMap()
            for wid, name in v.items():
                try:
                    diff[str(wid)] = DiffType(name)
                except ValueError:
                    diff[str(wid)] = str(name)
            out[k] = diff
        elif v is not None:
            out[str(k)] = str(v)
    return out


class _StateDecoder:
    def __init__(self, catalog: Dict[WidgetId, Widget], options: DecodeOptions) -> None:
        self.catalog = catalog
        self.options = options
        self._placed: Set[WidgetId] = set()
        self._path_ids: List[str] = []

    def _take(self, widget_id: WidgetId, *, path: str) -> Widget:
        w = self.catalog.get(widget_id)
        if w is None:
            raise TreeDecodeError("Widget id not found in catalog", path=path, widget_id=widget_id)
        if widget_id not in self._placed:
            self._placed.add(widget_id)
            return w
        # a catalog entry used in two places gets its own copy so each state owns its widgets
        return dataclasses.replace(w, metadata=dict(w.metadata), next_state=None)

    def state(self, obj: Any, *, path: str) -> State:
        if len(self._path_ids) >= self.options.max_depth:
            raise TreeDecodeError(f"Tree deeper than {self.options.max_depth} levels", path=path)
        if not isinstance(obj, dict):
            raise TreeDecodeError("State must be an object", path=path)

        sid = obj.get("state-id")
        if not isinstance(sid, str) or not sid:
            raise TreeDecodeError("State without state-id", path=path)
        if sid in self._path_ids:
            raise TreeDecodeError(f"State {sid!r} contains itself", path=path)

        items = obj.get("visible-widgets")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise TreeDecodeError("visible-widgets must be a list", path=f"{path}/visible-widgets")

        versions = obj.get("product-version")
        if isinstance(versions, str):
            versions = [versions]
        elif not isinstance(versions, list):
            versions = []

        state = State(
            id=sid,
            bookmark=_opt_str(obj.get("bookmarks")),
            metadata=_state_metadata_from_dict(obj.get("meta-data"), path=f"{path}/meta-data"),
            product_versions=[str(v) for v in versions],
        )

        self._path_ids.append(sid)
        for i, item in enumerate(items):
            item_path = f"{path}/visible-widgets/{i}"
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                raise TreeDecodeError("Widget reference without id", path=item_path)
            widget = self._take(item["id"], path=item_path)
            nxt = item.get("next-state")
            if nxt is not None:
                widget.next_state = self.state(nxt, path=f"{item_path}/next-state")
            state.widgets.append(widget)
        self._path_ids.pop()
        return state


def state_tree_from_dict(
    obj: Any,
    catalog: Dict[WidgetId, Widget],
    options: Optional[DecodeOptions] = None,
    *,
    path: str = "state",
) -> State:
    return _StateDecoder(catalog, options or DecodeOptions()).state(obj, path=path)


def path_from_dict(obj: Dict[str, Any]) -> SessionPath:
    created = obj.get("created-at-ms")
    try:
        duration = int(obj.get("session-duration") or 0)
    except (TypeError, ValueError):
        duration = 0
    return SessionPath(
        id=str(obj.get("id") or ""),
        product_version=str(obj.get("product-version") or ""),
        session_id=str(obj.get("session-id") or ""),
        session_duration=duration,
        created_at_ms=created if isinstance(created, int) and not isinstance(created, bool) else None,
        tester=str(obj.get("tester") or ""),
        widget_ids=[str(x) for x in (obj.get("widgets") or [])],
    )


def decode_model(doc: Any, options: Optional[DecodeOptions] = None) -> SharedModel:
    """
    Inverse of encode_model. Raises TreeDecodeError, never returns a
    partially built tree.
    """
    if not isinstance(doc, dict):
        raise TreeDecodeError("Document must be an object")
    if "state" not in doc:
        raise TreeDecodeError("Document without state", path="state")

    catalog = catalog_from_list(doc.get("all-widgets", []))
    state = state_tree_from_dict(doc["state"], catalog, options)

    updated = doc.get("last-updated-at-ms")
    paths_raw = doc.get("paths") or []
    if not isinstance(paths_raw, list):
        raise TreeDecodeError("paths must be a list", path="paths")

    return SharedModel(
        state=state,
        product=str(doc.get("product") or ""),
        last_updated_at_ms=updated if isinstance(updated, int) and not isinstance(updated, bool) else None,
        paths=[path_from_dict(p) for p in paths_raw if isinstance(p, dict)],
        issues=[str(x) for x in (doc.get("issues") or [])],
        catalog=catalog,
    )
