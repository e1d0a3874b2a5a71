from __future__ import annotations

import base64
import itertools
import random
from types import SimpleNamespace

import pytest

from reloader.src.fingerprint import (
    aggregate_snapshot,
    build_snapshot,
    changed_sources,
    decode_secret_data,
    hash_data,
    matches_source,
    normalize_data,
    object_data,
    parse_selector,
)
from reloader.src.models import MonitoredSource, SourceKind

APP_CONFIG = MonitoredSource.named(SourceKind.CONFIG_MAP, "shop", "app-config")
TIER_SELECTOR = MonitoredSource.selected(SourceKind.CONFIG_MAP, "shop", {"tier": "web"})


def make_config_map(
    name: str,
    data: dict[str, str] | None,
    labels: dict[str, str] | None = None,
    namespace: str | None = "shop",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels or {}),
        data=data,
        binary_data=None,
    )


def b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def test_hash_is_independent_of_key_order() -> None:
    items = [("a", "1"), ("b", "2"), ("c", "3"), ("d", "4")]
    digests = {hash_data(dict(order)) for order in itertools.permutations(items)}

    assert len(digests) == 1


def test_hash_differs_on_any_key_or_value_change() -> None:
    base = {"MESSAGE": "hello", "LEVEL": "info"}
    variants = [
        {"MESSAGE": "hello!", "LEVEL": "info"},
        {"MESSAGE": "hello", "LEVEL": "debug"},
        {"MESSAGE": "hello", "LOG_LEVEL": "info"},
        {"MESSAGE": "hello"},
        {"MESSAGE": "hello", "LEVEL": "info", "EXTRA": ""},
        {},
    ]

    digests = {hash_data(base)} | {hash_data(variant) for variant in variants}

    assert len(digests) == len(variants) + 1


def test_hash_has_no_collisions_over_random_corpus() -> None:
    rng = random.Random(1234)
    corpus = {
        tuple(
            sorted(
                (f"k{rng.randrange(6)}", str(rng.randrange(4)))
                for _ in range(rng.randrange(0, 5))
            )
        )
        for _ in range(500)
    }
    mappings = {tuple(sorted(dict(pairs).items())) for pairs in corpus}

    digests = {hash_data(dict(mapping)) for mapping in mappings}

    assert len(digests) == len(mappings)


def test_hash_does_not_confuse_separator_characters() -> None:
    assert hash_data({"a": "b,c"}) != hash_data({"a": "b", "c": ""})
    assert hash_data({"a=b": "c"}) != hash_data({"a": "b=c"})


def test_normalize_data_handles_none_and_non_dict() -> None:
    assert normalize_data(None) == {}
    assert normalize_data(["a"]) == {}
    assert normalize_data({"a": None, "b": 2, 3: "x"}) == {"a": "", "b": "2"}


def test_decode_secret_data_decodes_base64() -> None:
    assert decode_secret_data({"password": b64("hunter2")}) == {"password": "hunter2"}


def test_decode_secret_data_rejects_invalid_base64() -> None:
    with pytest.raises(ValueError, match="password"):
        decode_secret_data({"password": "not base64!"})


def test_object_data_merges_secret_string_data_over_data() -> None:
    secret = SimpleNamespace(
        data={"user": b64("admin"), "password": b64("old")},
        string_data={"password": "new"},
    )

    assert object_data(SourceKind.SECRET, secret) == {"user": "admin", "password": "new"}


def test_object_data_includes_config_map_binary_data() -> None:
    config_map = SimpleNamespace(data={"a": "1"}, binary_data={"blob": "AAEC"})

    assert object_data(SourceKind.CONFIG_MAP, config_map) == {"a": "1", "blob": "AAEC"}


def test_build_snapshot_orders_keys() -> None:
    snapshot = build_snapshot(APP_CONFIG, {"z": "1", "a": "2"})

    assert list(snapshot.data) == ["a", "z"]
    assert snapshot.fingerprint == hash_data({"a": "2", "z": "1"})
    assert snapshot.keys == frozenset({"a", "z"})


def test_parse_selector_multiple_labels_with_spaces() -> None:
    assert parse_selector(" app = shop , tier=web,,invalid") == {"app": "shop", "tier": "web"}


def test_matches_source_by_name_and_namespace() -> None:
    assert matches_source(APP_CONFIG, "shop", "app-config", {})
    assert matches_source(APP_CONFIG, None, "app-config", {})
    assert not matches_source(APP_CONFIG, "other", "app-config", {})
    assert not matches_source(APP_CONFIG, "shop", "app-config-2", {})


def test_matches_source_by_selector() -> None:
    assert matches_source(TIER_SELECTOR, "shop", "any", {"tier": "web", "x": "y"})
    assert not matches_source(TIER_SELECTOR, "shop", "any", {"tier": "db"})
    assert not matches_source(TIER_SELECTOR, "shop", "any", {})


def test_empty_selector_matches_everything_in_namespace() -> None:
    everything = MonitoredSource.selected(SourceKind.CONFIG_MAP, "shop", {})

    assert matches_source(everything, "shop", "anything", {})
    assert not matches_source(everything, "other", "anything", {})


def test_aggregate_snapshot_is_independent_of_listing_order() -> None:
    first = make_config_map("a-web", {"shared": "from-a", "a": "1"}, {"tier": "web"})
    second = make_config_map("b-web", {"shared": "from-b", "b": "2"}, {"tier": "web"})
    other = make_config_map("c-db", {"shared": "from-c"}, {"tier": "db"})

    forward = aggregate_snapshot(TIER_SELECTOR, [first, second, other])
    backward = aggregate_snapshot(TIER_SELECTOR, [other, second, first])

    assert forward.fingerprint == backward.fingerprint
    assert dict(forward.data) == {"a": "1", "b": "2", "shared": "from-b"}


def test_aggregate_snapshot_uses_default_namespace_for_bare_objects() -> None:
    bare = make_config_map("app-config", {"k": "v"}, namespace=None)

    assert dict(aggregate_snapshot(APP_CONFIG, [bare], namespace="shop").data) == {"k": "v"}
    assert dict(aggregate_snapshot(APP_CONFIG, [bare], namespace="other").data) == {}


def test_changed_sources_reports_differences_and_one_sided_sources() -> None:
    other = MonitoredSource.named(SourceKind.CONFIG_MAP, "shop", "other")
    removed = MonitoredSource.named(SourceKind.SECRET, "shop", "removed")

    left = [
        build_snapshot(APP_CONFIG, {"a": "1"}),
        build_snapshot(other, {"b": "1"}),
        build_snapshot(removed, {}),
    ]
    right = [
        build_snapshot(APP_CONFIG, {"a": "2"}),
        build_snapshot(other, {"b": "1"}),
        build_snapshot(TIER_SELECTOR, {}),
    ]

    assert changed_sources(left, right) == {APP_CONFIG, removed, TIER_SELECTOR}
