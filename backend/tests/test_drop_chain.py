from __future__ import annotations

import random
from datetime import date

import pytest

from app.queries.common import day_end, day_start
from app.queries.conversion_drop import build_drop_chain, get_event_drop_chain
from app.seed import generators, writer


def test_drop_chain_arithmetic():
    chain = build_drop_chain(["view", "cart", "buy"], {"view": 200, "cart": 50, "buy": 10})

    assert chain == [
        {"step": "view", "users": 200, "dropToNext": 150, "dropRate": 75.0},
        {"step": "cart", "users": 50, "dropToNext": 40, "dropRate": 80.0},
        {"step": "buy", "users": 10, "dropToNext": None, "dropRate": None},
    ]


def test_drop_chain_with_empty_step_has_zero_rate():
    chain = build_drop_chain(["view", "cart", "buy"], {"cart": 5})

    assert chain[0]["users"] == 0
    assert chain[0]["dropToNext"] == -5
    assert chain[0]["dropRate"] == 0
    assert chain[1]["dropToNext"] == 5
    assert chain[1]["dropRate"] == 100.0


def test_drop_chain_keeps_independent_counts():
    chain = build_drop_chain(["a", "b"], {"a": 10, "b": 30})
    assert chain[0]["dropToNext"] == -20
    assert chain[0]["dropRate"] == -200.0


def test_event_drop_chain_validates_input(website_id):
    start, end = day_start(date(2025, 7, 1)), day_end(date(2025, 7, 31))
    with pytest.raises(ValueError):
        get_event_drop_chain(website_id, [" ", ""], start, end)
    with pytest.raises(ValueError):
        get_event_drop_chain(website_id, ["a", "b"], start, end, distinct_by="ip")


def test_event_drop_chain_over_seeded_funnel(website_id):
    first, last = date(2025, 7, 1), date(2025, 7, 14)
    steps = ["view_product", "add_to_cart", "purchase"]
    batch = writer.SeedBatch(website_id)
    seeded = generators.funnel_sessions(
        batch, steps, [1.0, 0.5, 0.25], 1000, first, last, random.Random(7), sequential=False
    )
    writer.write_batch(batch)

    chain = get_event_drop_chain(website_id, steps, day_start(first), day_end(last))

    assert [step["users"] for step in chain] == seeded
    assert chain[0]["users"] == 1000
    assert abs(chain[1]["users"] - 500) <= 60
    assert abs(chain[2]["users"] - 250) <= 50
    assert abs(chain[0]["dropRate"] - 50) <= 6
    for current, following in zip(chain, chain[1:]):
        assert current["dropToNext"] == current["users"] - following["users"]


def test_event_drop_chain_by_visitor(website_id):
    first, last = date(2025, 7, 1), date(2025, 7, 2)
    batch = writer.SeedBatch(website_id)
    # Two sessions for the same visitor both reach step a.
    for _ in range(2):
        session_id = batch.add_session(day_start(first), distinct_id="visitor-1")
        batch.add_event(session_id, day_start(first), "/a", event_name="a")
    writer.write_batch(batch)

    by_session = get_event_drop_chain(website_id, ["a", "b"], day_start(first), day_end(last))
    by_visitor = get_event_drop_chain(
        website_id, ["a", "b"], day_start(first), day_end(last), distinct_by="visitor_id"
    )

    assert by_session[0]["users"] == 2
    assert by_visitor[0]["users"] == 1
