# sharedmodel/tools/inspect_model.py
from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from sharedmodel.codec.state_codec import TreeDecodeError, decode_model
from sharedmodel.core.schemas import SharedModel, State
from sharedmodel.core.state_tree import is_marked_as_deleted, iter_states, iter_widgets, next_state_of


# ---------------- utils ----------------

def _load_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8", errors="replace"))


def _preview_str(s: Any, n: int = 60) -> str:
    t = "" if s is None else str(s)
    t = t.replace("\n", "\\n")
    if len(t) <= n:
        return t
    return t[: n] + "..."


def _fmt_ms(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


# ---------------- inspectors ----------------

def render_tree(state: State, *, max_depth: int = 50) -> List[str]:
    lines: List[str] = []

    def _walk(st: State, depth: int) -> None:
        pad = "    " * depth
        label = f" [{st.bookmark}]" if st.bookmark else ""
        lines.append(f"{pad}state {st.id}{label}")
        if depth >= max_depth:
            if st.widgets:
                lines.append(f"{pad}  ...")
            return
        for w in st.widgets:
            mark = " DELETED" if is_marked_as_deleted(w) else ""
            text = _preview_str(w.text or w.metadata.get("text"))
            lines.append(f"{pad}  - {w.id} {w.subtype.value} {text!r}{mark}")
            nxt = next_state_of(w)
            if nxt is not None:
                _walk(nxt, depth + 1)

    _walk(state, 0)
    return lines


def inspect_model(model: SharedModel, *, max_depth: int = 50) -> None:
    widgets = list(iter_widgets(model.state))
    deleted = [w for w in widgets if is_marked_as_deleted(w)]

    print("\n=== SHARED MODEL ===")
    print(f"product        {model.product or '-'}")
    print(f"updated        {_fmt_ms(model.last_updated_at_ms)}")
    print(f"states         {sum(1 for _ in iter_states(model.state))}")
    print(f"widgets        {len(widgets)}")
    print(f"tombstoned     {len(deleted)}")
    print(f"catalog        {len(model.catalog)}")
    print(f"paths          {len(model.paths)}")
    print(f"issues         {model.issues}")
    for p in model.paths:
        print(f"  path {p.id} tester={p.tester} version={p.product_version} widgets={len(p.widget_ids)}")

    print("\n=== TREE ===")
    for line in render_tree(model.state, max_depth=max_depth):
        print(line)


# ---------------- main ----------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Print a summary of a shared-model file.")
    ap.add_argument("path", type=str)
    ap.add_argument("--depth", type=int, default=50)
    args = ap.parse_args(argv)

    path = Path(args.path).expanduser().resolve()
    try:
        doc = _load_json(path)
    except json.JSONDecodeError as e:
        print(f"[INSPECT ERR] {path.as_posix()} is not valid JSON: {e}")
        return 2
    if doc is None:
        print(f"[INSPECT ERR] not found: {path.as_posix()}")
        return 1

    try:
        model = decode_model(doc)
    except TreeDecodeError as e:
        print(f"[INSPECT ERR] {e}")
        return 2

    inspect_model(model, max_depth=args.depth)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
