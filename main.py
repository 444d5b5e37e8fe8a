# sharedmodel/main.py
from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from sharedmodel.codec.state_codec import TreeDecodeError
from sharedmodel.core.schemas import SessionContext, State, home_state
from sharedmodel.merge.diff_engine import annotate_diff, diff_summary
from sharedmodel.merge.merge_engine import MergeEngine
from sharedmodel.runner.session import merge_paths
from sharedmodel.runner.store import SharedModelStore, StoreConfig


@dataclass(frozen=True)
class MergeRunOutput:
    status: str
    shared_model: str
    reason: str = ""


def _make_store(data_dir: Path, shared_folder: Optional[Path]) -> SharedModelStore:
    return SharedModelStore(StoreConfig(data_dir=data_dir, shared_model_folder=shared_folder))


def _load_tree(store: SharedModelStore, path: Optional[Path]) -> Optional[State]:
    if path is None:
        return None
    model = store.load_model(path)
    return model.state if model is not None else None


def run_merge(
    *,
    store: SharedModelStore,
    ctx: SessionContext,
    before_path: Optional[Path],
    session_path: Path,
) -> MergeRunOutput:
    target = store.shared_model_path(ctx.product)

    print("\n================= [MERGE INPUT] =================")
    print(f"product        {ctx.product}")
    print(f"version        {ctx.product_version}")
    print(f"tester         {ctx.tester}")
    print(f"before         {before_path}")
    print(f"session        {session_path}")
    print(f"shared model   {target}")
    print("=================================================\n")

    session_model = store.load_model(session_path)
    if session_model is None:
        return MergeRunOutput(status="error", shared_model=str(target), reason=f"no session model at {session_path}")

    before = _load_tree(store, before_path)
    session_tree = session_model.state
    annotate_diff(before, session_tree)
    print(f"[MERGE] diff {diff_summary(session_tree)}")

    current = store.load_model(target)
    engine = MergeEngine()
    merged = engine.merge(current.state if current is not None else None, session_tree)

    paths = merge_paths(current.paths if current is not None else [], session_model.paths)

    if not store.save_model(target, merged, product=ctx.product, paths=paths):
        return MergeRunOutput(status="error", shared_model=str(target), reason="unable to save shared model")

    r = engine.report
    print("\n================= [MERGE RESULT] =================")
    print(f"tombstoned     {len(r.tombstoned)}")
    print(f"coalesced      {len(r.coalesced)}")
    print(f"appended       {len(r.appended)}")
    print(f"skipped        {len(r.skipped)}")
    print("==================================================\n")
    return MergeRunOutput(status="ok", shared_model=str(target))


def run_init(*, store: SharedModelStore, ctx: SessionContext) -> MergeRunOutput:
    target = store.shared_model_path(ctx.product)
    if store.load(target) is not None:
        return MergeRunOutput(status="ok", shared_model=str(target), reason="already exists")
    if not store.save_model(target, home_state(), product=ctx.product):
        return MergeRunOutput(status="error", shared_model=str(target), reason="unable to save shared model")
    return MergeRunOutput(status="ok", shared_model=str(target), reason="created")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Fold captured exploration sessions into a shared state model.")
    ap.add_argument("--data-dir", type=Path, default=Path("data"))
    ap.add_argument("--shared-folder", type=Path, default=None, help="defaults to --data-dir")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="cmd", required=True)

    m = sub.add_parser("merge", help="merge a session model into the product's shared model")
    m.add_argument("--product", required=True)
    m.add_argument("--product-version", default="")
    m.add_argument("--tester", default="")
    m.add_argument("--before", type=Path, default=None, help="snapshot taken at session start")
    m.add_argument("--session", type=Path, required=True, help="model captured during the session")

    i = sub.add_parser("init", help="create a home-only shared model if none exists")
    i.add_argument("--product", required=True)
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    store = _make_store(args.data_dir, args.shared_folder)
    ctx = SessionContext(
        product=args.product,
        product_version=getattr(args, "product_version", ""),
        tester=getattr(args, "tester", ""),
    )

    try:
        if args.cmd == "merge":
            out = run_merge(store=store, ctx=ctx, before_path=args.before, session_path=args.session)
        else:
            out = run_init(store=store, ctx=ctx)
    except TreeDecodeError as e:
        print(f"[MERGE ERR] {e}")
        return 2

    print(f"status={out.status} shared_model={out.shared_model} {out.reason}".rstrip())
    return 0 if out.status == "ok" else 1


if __name__ == "__main__":
    raise SystemExit(main())
