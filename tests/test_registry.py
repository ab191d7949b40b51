"""
Unit tests for PalmRegistry and its stores.
Run with:  pytest tests/
"""

from __future__ import annotations

import json

import pytest

from palm_pay.codes import is_minted_code
from palm_pay.registry import (
    JsonFileRegistryStore,
    MemoryRegistryStore,
    PalmRegistry,
    PalmSample,
    RegistryIOFailure,
)


def _sample(code: str, palm_hash: str) -> PalmSample:
    return PalmSample(code=code, hash=palm_hash, created_at=1_700_000_000_000)


class TestPalmRegistry:

    def test_first_sighting_registers_new_code(self):
        store = MemoryRegistryStore()
        registry = PalmRegistry(store)
        code, is_new = registry.resolve("k3j9x2", "data:image/jpeg;base64,AAAA")
        assert is_new is True
        assert is_minted_code(code)
        samples = store.load()
        assert len(samples) == 1
        assert samples[0].hash == "k3j9x2"
        assert samples[0].code == code

    def test_repeat_returns_existing_code(self):
        registry = PalmRegistry(MemoryRegistryStore())
        code, _ = registry.resolve("k3j9x2")
        again, is_new = registry.resolve("k3j9x2")
        assert again == code
        assert is_new is False
        assert len(registry.samples()) == 1

    def test_earliest_similar_sample_wins(self):
        store = MemoryRegistryStore([
            _sample("A", "abcdz"),
            _sample("B", "abcde"),
            _sample("C", "abcde"),
        ])
        match = PalmRegistry(store).find_match("abcde")
        assert match is not None and match.code == "A"

    def test_below_threshold_is_new(self):
        store = MemoryRegistryStore([_sample("A", "abczz")])   # 0.6 similar
        registry = PalmRegistry(store)
        assert registry.find_match("abcde") is None
        code, is_new = registry.resolve("abcde")
        assert is_new is True and code != "A"
        assert len(store.load()) == 2

    def test_different_length_never_matches(self):
        store = MemoryRegistryStore([_sample("A", "abcde")])
        assert PalmRegistry(store).find_match("abcdef") is None

    def test_frame_digest_truncated(self):
        store = MemoryRegistryStore()
        PalmRegistry(store).resolve("h1", "x" * 5000)
        assert len(store.load()[0].frame_digest) == 1000

    def test_write_failure_still_returns_code(self):
        class BrokenStore(MemoryRegistryStore):
            def append(self, sample):
                raise RegistryIOFailure("disk full")

        code, is_new = PalmRegistry(BrokenStore()).resolve("h1")
        assert is_new is True
        assert is_minted_code(code)


class TestJsonFileRegistryStore:

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileRegistryStore(tmp_path / "palms.json")
        assert store.load() == []

    def test_append_persists_with_wire_names(self, tmp_path):
        path = tmp_path / "nested" / "palms.json"
        store = JsonFileRegistryStore(path)
        store.append(_sample("PALM_1_abcdefghi", "h1"))
        store.append(_sample("PALM_2_abcdefghi", "h2"))

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert [r["palmCode"] for r in raw] == ["PALM_1_abcdefghi", "PALM_2_abcdefghi"]
        assert set(raw[0]) == {"palmCode", "palmHash", "timestamp", "imageData"}

        reloaded = JsonFileRegistryStore(path).load()
        assert [s.hash for s in reloaded] == ["h1", "h2"]

    @pytest.mark.parametrize("content", ["{not json", '{"palmCode": "x"}', '[{"palmHash": 3}]'])
    def test_corrupt_content_treated_as_empty(self, tmp_path, content):
        path = tmp_path / "palms.json"
        path.write_text(content, encoding="utf-8")
        store = JsonFileRegistryStore(path)
        assert store.load() == []
        registry = PalmRegistry(store)
        _, is_new = registry.resolve("h1")
        assert is_new is True
        assert len(store.load()) == 1

    def test_env_var_sets_default_path(self, tmp_path, monkeypatch):
        target = tmp_path / "env_palms.json"
        monkeypatch.setenv("PALM_PAY_REGISTRY", str(target))
        store = JsonFileRegistryStore()
        assert store.path == target

    def test_samples_are_immutable(self):
        sample = _sample("A", "h")
        with pytest.raises(Exception):
            sample.code = "B"
