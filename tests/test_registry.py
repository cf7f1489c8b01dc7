import hashlib
import json
import time
from dataclasses import replace

import pytest

from provmark.registry import (GENESIS, JsonFileRegistry, LedgerRecord, LocalLedgerCache,
                               MemoryRegistry, RegistryError, chain_hash, guarded_call,
                               utc_now_iso, verify_chain)

from .conftest import CREATOR, TIMESTAMP


def _record(i, prompt=None):
    return LedgerRecord.new(CREATOR, f"2024-01-01T00:00:0{i}.000Z", f"hash{i}", prompt)


def test_append_builds_chain(registry):
    first = registry.append(_record(1, prompt="a cat"))
    second = registry.append(_record(2))
    assert first.prev_hash == GENESIS
    expected = hashlib.sha256(
        f"{CREATOR}|2024-01-01T00:00:01.000Z|hash1|a cat|{GENESIS}".encode("utf-8")).hexdigest()
    assert first.chain_hash == expected
    assert second.prev_hash == first.chain_hash
    assert second.chain_hash == chain_hash(second, first.chain_hash)
    assert verify_chain(registry.records()) is None


def test_chain_sweep_reports_first_tampered_record(registry):
    for i in range(4):
        registry.append(_record(i))
    records = registry.records()
    records[2] = replace(records[2], image_hash="forged")
    broken = verify_chain(records)
    assert broken is not None
    assert broken.record_id == records[2].id
    assert broken.actual_hash == records[2].chain_hash


def test_lookups(registry):
    rec = registry.append(_record(5))
    assert registry.find_by_metadata(CREATOR, rec.timestamp) == rec
    assert registry.find_by_hash("hash5") == rec
    assert registry.find_by_hash("nope") is None
    assert registry.find_by_metadata("bob", rec.timestamp) is None


def test_local_cache_mirrors_newest_first(tmp_path):
    path = tmp_path / "cache.json"
    cache = LocalLedgerCache(path)
    a, b = _record(1), _record(2)
    cache.mirror(a)
    cache.mirror(b)
    assert [r.id for r in cache.entries()] == [b.id, a.id]
    reloaded = LocalLedgerCache(path)
    assert reloaded.find_by_hash("hash1") == a
    assert json.loads(reloaded.export_json())[0]["id"] == b.id


def test_json_registry_persists(tmp_path):
    path = tmp_path / "ledger.json"
    reg = JsonFileRegistry(path)
    reg.append(_record(1))
    reg.append(_record(2))
    again = JsonFileRegistry(path)
    assert len(again.records()) == 2
    assert verify_chain(again.records()) is None
    assert again.append(_record(3)).prev_hash == again.records()[1].chain_hash


def test_guarded_call_degrades_to_none():
    def broken():
        raise RegistryError("backend down")

    def slow():
        time.sleep(0.5)
        return "late"

    assert guarded_call(broken) is None
    assert guarded_call(slow, timeout=0.05) is None
    assert guarded_call(lambda x: x * 2, 21) == 42


@pytest.mark.parametrize("exc", [KeyError("bug"), ValueError("bad row"), RuntimeError("client")])
def test_guarded_call_treats_unexpected_errors_as_miss(exc):
    def buggy():
        raise exc

    assert guarded_call(buggy) is None


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"a": 1}'])
def test_corrupt_cache_file_starts_empty(tmp_path, content):
    path = tmp_path / "cache.json"
    path.write_text(content)
    cache = LocalLedgerCache(path)
    assert cache.entries() == []
    rec = _record(1)
    cache.mirror(rec)
    assert LocalLedgerCache(path).find_by_hash("hash1") == rec


def test_corrupt_registry_file_raises_registry_error(tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text("{not json")
    with pytest.raises(RegistryError):
        JsonFileRegistry(path)


def test_utc_now_iso_shape():
    stamp = utc_now_iso()
    assert len(stamp) == 24 and stamp.endswith("Z") and stamp[19] == "."
