import json

from microsense.core.config import inference_cfg, scan_cfg
from microsense.core.models import AlphaEyeParams, HistoryEntry, Settings, StateOfMind
from microsense.core.store import JsonFileStore, MemoryStore, Persistence


def make_entry(ts: float, dominant: str = "balanced") -> HistoryEntry:
    return HistoryEntry(
        timestamp=ts,
        params=AlphaEyeParams(30, 25, 20, 25, 60, 62, 60, 61, 40, 20),
        state_of_mind=StateOfMind(60, 78, "Calm & Content"),
        dominant_state=dominant,
    )


def test_settings_default_when_nothing_stored():
    assert Persistence(MemoryStore()).load_settings() == Settings()


def test_settings_defaults_follow_environment_config():
    settings = Settings()
    assert settings.scan_duration == scan_cfg.duration_s
    assert settings.ollama_url == inference_cfg.base_url
    assert settings.ollama_model == inference_cfg.model


def test_settings_merge_stored_values_over_defaults():
    store = MemoryStore()
    store.set("microsense-settings", json.dumps({"theme": "light", "scan_duration": 20, "legacy": 1}))

    settings = Persistence(store).load_settings()

    assert settings.theme == "light"
    assert settings.scan_duration == 20
    assert settings.ollama_model == "llama3.2"


def test_corrupt_settings_fall_back_to_defaults():
    store = MemoryStore()
    store.set("microsense-settings", "{not json")
    assert Persistence(store).load_settings() == Settings()
    store.set("microsense-settings", "[1, 2]")
    assert Persistence(store).load_settings() == Settings()


def test_history_round_trip_keeps_order():
    persistence = Persistence(MemoryStore())
    entries = [make_entry(3.0, "high-stress"), make_entry(2.0), make_entry(1.0)]
    persistence.save_history(entries)

    loaded = persistence.load_history()
    assert loaded == entries


def test_history_is_capped():
    persistence = Persistence(MemoryStore(), history_limit=10)
    persistence.save_history([make_entry(float(i)) for i in range(15, 0, -1)])

    loaded = persistence.load_history()
    assert len(loaded) == 10
    assert loaded[0].timestamp == 15.0


def test_corrupt_history_loads_empty():
    store = MemoryStore()
    persistence = Persistence(store)
    for raw in ("garbage", '{"a": 1}', '[{"timestamp": 1}]'):
        store.set("microsense-history", raw)
        assert persistence.load_history() == []


def test_clear_removes_both_keys():
    store = MemoryStore()
    persistence = Persistence(store)
    persistence.save_settings(Settings(theme="light"))
    persistence.save_history([make_entry(1.0)])

    persistence.clear()

    assert store.get("microsense-settings") is None
    assert store.get("microsense-history") is None


def test_json_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "store.json"
    JsonFileStore(path).set("k", "v")
    JsonFileStore(path).set("other", "w")

    store = JsonFileStore(path)
    assert store.get("k") == "v"
    assert store.get("other") == "w"
    store.delete("k")
    assert JsonFileStore(path).get("k") is None
    assert list(path.parent.iterdir()) == [path]


def test_json_file_store_survives_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{{{", encoding="utf-8")

    store = JsonFileStore(path)
    assert store.get("anything") is None
    store.set("k", "v")
    assert JsonFileStore(path).get("k") == "v"
