"""Tests for the keyed snapshot differ."""

from __future__ import annotations

from conftest import make_client

from routerwatch.core.differ import by_mac, diff, index

A = make_client("AA:BB:CC:00:00:01")
B = make_client("AA:BB:CC:00:00:02")
C = make_client("AA:BB:CC:00:00:03")


def test_identical_snapshots_have_no_changes():
    result = diff([A, B], [A, B])
    assert result.entered == []
    assert result.left == []
    assert not result


def test_entered_and_left():
    result = diff([A, B], [B, C])
    assert result.entered == [C]
    assert result.left == [A]
    assert result


def test_empty_old_means_everything_entered():
    assert diff([], [A, B]).entered == [A, B]
    assert diff([A, B], []).left == [A, B]


def test_order_follows_source_lists():
    result = diff([C, B, A], [])
    assert result.left == [C, B, A]
    result = diff([], [B, A, C])
    assert result.entered == [B, A, C]


def test_identity_is_the_mac_not_the_other_fields():
    renamed = A.model_copy(update={"name": "laptop", "ip": "192.168.1.50"})
    assert not diff([A], [renamed])


def test_duplicate_keys_first_wins():
    first = make_client("AA:BB:CC:00:00:01", name="first")
    second = make_client("AA:BB:CC:00:00:01", name="second")
    indexed = index([first, second], by_mac)
    assert list(indexed) == ["AA:BB:CC:00:00:01"]
    assert indexed["AA:BB:CC:00:00:01"].name == "first"


def test_custom_key():
    result = diff(["a", "bb"], ["bb", "ccc"], key=len)
    assert result.entered == ["ccc"]
    assert result.left == ["a"]


def test_entered_and_left_never_share_a_key():
    old = [A, B]
    new = [B, C]
    result = diff(old, new)
    assert {c.mac for c in result.entered}.isdisjoint({c.mac for c in result.left})
