from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import pytest

from sharedmodel.core.schemas import (
    Rect,
    State,
    Widget,
    WidgetStatus,
    WidgetSubtype,
    WidgetVisibility,
    home_state,
)

# widget ids of the seven level tree, branch 0 and branch 1 below level 5
CHAIN_IDS = ["162124543220764", "162124543930275", "162124544379288", "16212454465295"]
BRANCH0_IDS = ["162124545582218", "16212454633346", "162124547047918"]
BRANCH1_IDS = ["162124574889049", "16212457535564", "162124575555994"]


def make_widget(widget_id: str, **overrides) -> Widget:
    w = Widget(
        id=widget_id,
        status=WidgetStatus.LOCATED,
        created_by="Mr. Tester",
        subtype=WidgetSubtype.LEFT_CLICK_ACTION,
        visibility=WidgetVisibility.VISIBLE,
        location=Rect(970, 117, 14, 36),
        created_date=datetime(2021, 5, 17, 9, 30, 0, 123000, tzinfo=timezone.utc),
        metadata={
            "xpath": "/html[1]/body[1]/div[1]/div[1]/header[1]/div[1]/a[1]",
            "href": "https://mydomain.de/login",
            "text": "Login",
            "tag": "A",
            "class": "v-btn v-btn--flat v-btn--router v-btn--text theme--dark v-size--default",
        },
    )
    meta = overrides.pop("metadata", None)
    for k, v in overrides.items():
        setattr(w, k, v)
    if meta:
        w.metadata.update(meta)
    return w


def link_widget(widget_id: str, key: str, next_state: Optional[State] = None) -> Widget:
    """A widget whose matching hints are derived from key, so different keys never match."""
    w = make_widget(
        widget_id,
        text=f"link {key}",
        metadata={
            "xpath": f"/html[1]/body[1]/nav[1]/a[{key}]",
            "href": f"https://mydomain.de/{key}",
            "text": f"link {key}",
        },
    )
    w.next_state = next_state
    return w


def build_chain(
    root: State,
    steps: Sequence[Tuple[str, str, str]],
) -> State:
    """
    Hang a single-widget chain below root.

    steps are (widget id, matching key, id of the state the widget leads to).
    Returns the last state of the chain.
    """
    cur = root
    for widget_id, key, state_id in steps:
        nxt = State(id=state_id)
        cur.add_widget(link_widget(widget_id, key, nxt))
        cur = nxt
    return cur


def chain_steps(widget_ids: Sequence[str], keys: Sequence[str], state_prefix: str) -> List[Tuple[str, str, str]]:
    return [(wid, key, f"{state_prefix}{i}") for i, (wid, key) in enumerate(zip(widget_ids, keys))]


@pytest.fixture
def scenario_shared() -> State:
    """
    H - L2 - L3 - L4 - L5 - L60 - L70, as stored in the shared model
    """
    root = home_state()
    level5 = build_chain(root, chain_steps(CHAIN_IDS, ["home", "users", "groups", "group-1"], "s"))
    build_chain(level5, chain_steps(BRANCH0_IDS, ["edit", "edit-form", "save"], "b0-"))
    return root


@pytest.fixture
def scenario_session() -> State:
    """
    The same chain captured independently by a second tester, with fresh
    ids, continuing into the other branch below L5.
    """
    root = home_state()
    fresh = ["9001", "9002", "9003", "9004"]
    level5 = build_chain(root, chain_steps(fresh, ["home", "users", "groups", "group-1"], "t"))
    build_chain(level5, chain_steps(BRANCH1_IDS, ["members", "member-list", "invite"], "b1-"))
    return root


@pytest.fixture
def small_tree() -> State:
    """
    Home with a login link (leading one level deeper) and a help link.
    """
    root = home_state()
    login_next = State(id="login", bookmark="Login page")
    login_next.add_widget(link_widget("submit", "submit"))
    root.add_widget(link_widget("login", "login", login_next))
    root.add_widget(link_widget("help", "help"))
    return root
