"""Tests for canonical hashing utilities."""

from __future__ import annotations

from relaycore.utils.hash import canonical_json, compute_state_hashes, hash_row_set, sha256_bytes, sha256_file


def test_canonical_json_sorts_keys():
    assert canonical_json({"b": 1, " a ": [1, {"d": 2, "c": 3}]}) == '{"a":[1,{"c":3,"d":2}],"b":1}'


def test_row_set_is_order_independent():
    rows = [{"idx": 0, "row": {"x": 1}}, {"idx": 1, "row": {"x": 2}}]
    assert hash_row_set(rows) == hash_row_set(list(reversed(rows)))
    assert hash_row_set(rows) != hash_row_set(rows[:1])


def test_file_digest_matches_bytes(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"relay" * 5000)
    assert sha256_file(path) == sha256_bytes(b"relay" * 5000)


def test_state_hash_keys():
    hashes = compute_state_hashes([], [], [], [])
    assert set(hashes) == {"facts", "matches", "summaries", "kpis"}
    assert hashes["facts"] == hashes["kpis"]
