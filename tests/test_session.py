from __future__ import annotations

import gc
import json
from datetime import datetime

import pytest

from conftest import (
    BRANCH0_IDS,
    BRANCH1_IDS,
    CHAIN_IDS,
    build_chain,
    chain_steps,
    link_widget,
)
from sharedmodel.core.schemas import SessionContext, SessionPath, home_state
from sharedmodel.core.state_tree import find_state, find_widget, is_marked_as_deleted, same_tree
from sharedmodel.runner.session import SessionRunner, merge_paths
from sharedmodel.runner.store import SharedModelStore, StoreConfig

WHEN = datetime(2021, 5, 17, 9, 30, 0)


@pytest.fixture
def store(tmp_path) -> SharedModelStore:
    return SharedModelStore(StoreConfig(data_dir=tmp_path / "data", shared_model_folder=tmp_path / "shared"))


def _runner(store: SharedModelStore, tester: str) -> SessionRunner:
    return SessionRunner(store, SessionContext(product="shop", product_version="1.0", tester=tester))


def test_first_session_creates_home(store):
    runner = _runner(store, "ana")
    state = runner.load_state()

    assert same_tree(state, home_state())
    assert runner.snapshot is None
    assert runner.shared_model_path.exists()
    assert same_tree(store.load_model(runner.shared_model_path).state, home_state())


def test_save_writes_shared_and_session_files(store, small_tree):
    runner = _runner(store, "ana")
    runner.load_state()
    trail = SessionPath(id="p1", tester="ana", widget_ids=["login", "submit"])

    assert runner.save_state(small_tree, paths=[trail], when=WHEN)

    shared = store.load_model(runner.shared_model_path)
    assert same_tree(shared.state, small_tree)
    assert [p.id for p in shared.paths] == ["p1"]

    session_file = store.session_model_path("shop", WHEN)
    assert session_file.exists()
    session = store.load_model(session_file)
    assert [w.id for w in session.state.widgets] == ["login", "help"]
    assert store.properties_path("shop").exists()
    assert runner.last_report.appended == ["login", "help"]


def test_second_session_builds_on_first(store, small_tree):
    first = _runner(store, "ana")
    first.load_state()
    first.save_state(small_tree, when=WHEN)

    second = _runner(store, "bo")
    tree = second.load_state()
    assert second.snapshot is not None
    assert same_tree(tree, small_tree)

    find_state(tree, "login").add_widget(link_widget("forgot", "forgot"))
    help_ = tree.widget("help")
    tree.remove_widget(help_)
    assert second.save_state(tree, when=datetime(2021, 5, 18, 10, 0, 0))

    shared = store.load_model(second.shared_model_path).state
    assert [w.id for w in find_state(shared, "login").widgets] == ["submit", "forgot"]
    assert is_marked_as_deleted(shared.widget("help"))
    assert not is_marked_as_deleted(shared.widget("login"))


def test_parallel_sessions_join_branches(store):
    ana = _runner(store, "ana")
    bo = _runner(store, "bo")
    ana_tree = ana.load_state()
    bo_tree = bo.load_state()

    level5 = build_chain(ana_tree, chain_steps(CHAIN_IDS, ["home", "users", "groups", "group-1"], "s"))
    build_chain(level5, chain_steps(BRANCH0_IDS, ["edit", "edit-form", "save"], "b0-"))
    level5 = build_chain(bo_tree, chain_steps(["9001", "9002", "9003", "9004"], ["home", "users", "groups", "group-1"], "t"))
    build_chain(level5, chain_steps(BRANCH1_IDS, ["members", "member-list", "invite"], "b1-"))

    assert ana.save_state(ana_tree, paths=[SessionPath(id="ana-1")], when=WHEN)
    assert bo.save_state(bo_tree, paths=[SessionPath(id="bo-1")], when=datetime(2021, 5, 17, 9, 45, 0))

    shared = store.load_model(ana.shared_model_path)
    joined = find_state(shared.state, "s3")
    assert [w.id for w in joined.widgets] == [BRANCH0_IDS[0], BRANCH1_IDS[0]]
    assert find_widget(shared.state, "9001") is None
    assert [p.id for p in shared.paths] == ["ana-1", "bo-1"]


def test_properties_survive_sessions(store, small_tree):
    store.save_properties("shop", {"product-version": "1.0"})
    runner = _runner(store, "ana")
    runner.load_state()
    assert runner.properties == {"product-version": "1.0"}

    runner.properties["last-tester"] = "ana"
    runner.save_state(small_tree, when=WHEN)
    assert store.load_properties("shop") == {"product-version": "1.0", "last-tester": "ana"}


def test_products(store, small_tree):
    runner = _runner(store, "ana")
    runner.load_state()
    runner.save_state(small_tree, when=WHEN)
    assert runner.products() == ["shop"]


def test_merge_paths_dedupes_by_id():
    a, b, c = SessionPath(id="a"), SessionPath(id="b", tester="late"), SessionPath(id="c")
    merged = merge_paths([a, SessionPath(id="b")], [b, c])
    assert [p.id for p in merged] == ["a", "b", "c"]
    assert merged[1].tester == ""


def test_matched_counterpart_survives_a_session(store, small_tree):
    outside = link_widget("elsewhere", "elsewhere")
    small_tree.widget("help").set_matching_widget(outside)
    assert store.save_model(store.shared_model_path("shop"), small_tree, product="shop")
    del outside

    runner = _runner(store, "ana")
    tree = runner.load_state()
    gc.collect()
    tree.add_widget(link_widget("faq", "faq"))
    assert runner.save_state(tree, when=WHEN)

    for path in (store.session_model_path("shop", WHEN), runner.shared_model_path):
        doc = json.loads(path.read_text(encoding="utf-8"))
        ids = [w["id"] for w in doc["all-widgets"]]
        assert "elsewhere" in ids
        help_obj = next(w for w in doc["all-widgets"] if w["id"] == "help")
        assert help_obj["meta-data"]["matching_widget"] == "elsewhere"
