"""Tests for versioned weight configuration."""

import pytest

from visual_dna.weight_config import (
    ALL_WEIGHTS_KEY, THRESHOLDS_KEY, JsonConfigStore, WeightConfigService,
    category_key,
)
from visual_dna.weights import CATEGORY_WEIGHTS, THRESHOLDS, WeightVector


class BrokenStore:
    def get_active_config(self, name):
        raise ConnectionError("config database unreachable")

    def create_new_version(self, name, config_type, data, training_metrics=None):
        raise ConnectionError("config database unreachable")

    def list_active(self):
        return []


class TestJsonConfigStore:
    """Tests for the file-backed config store."""

    def test_versions_increment(self, tmp_path):
        store = JsonConfigStore(str(tmp_path))
        first = store.create_new_version("thresholds", "thresholds", {"A": 1})
        second = store.create_new_version("thresholds", "thresholds", {"A": 2})
        assert (first["version"], second["version"]) == (1, 2)
        assert store.get_active_config("thresholds")["config_data"] == {"A": 2}

    def test_missing_config(self, tmp_path):
        assert JsonConfigStore(str(tmp_path)).get_active_config("nope") is None

    def test_list_active(self, tmp_path):
        store = JsonConfigStore(str(tmp_path))
        store.create_new_version("a", "t", {"x": 1})
        store.create_new_version("b", "t", {"x": 1})
        store.create_new_version("b", "t", {"x": 2})
        active = {c["config_name"]: c["version"] for c in store.list_active()}
        assert active == {"a": 1, "b": 2}


class TestWeightConfigService:
    """Tests for cached weight and threshold loading."""

    def test_defaults_without_store(self):
        service = WeightConfigService()
        assert service.load_category_weights("pet") == CATEGORY_WEIGHTS["pet"]
        assert service.load_category_weights("unheard-of") == CATEGORY_WEIGHTS["other"]
        assert service.load_thresholds() == THRESHOLDS
        assert service.load_all_category_weights() == CATEGORY_WEIGHTS
        assert service.get_weight_versions() == {}

    def test_store_failure_falls_back(self):
        service = WeightConfigService(BrokenStore())
        assert service.load_category_weights("keys") == CATEGORY_WEIGHTS["keys"]
        assert service.load_thresholds() == THRESHOLDS
        assert service.load_all_category_weights()["pet"] == CATEGORY_WEIGHTS["pet"]

    def test_initialize_defaults_once(self, tmp_path):
        service = WeightConfigService(JsonConfigStore(str(tmp_path)))
        assert service.initialize_defaults()
        assert not service.initialize_defaults()
        versions = service.get_weight_versions()
        assert set(versions) == {ALL_WEIGHTS_KEY, THRESHOLDS_KEY}
        assert service.load_all_category_weights()["pet"] == CATEGORY_WEIGHTS["pet"]

    def test_saved_weights_take_effect(self, tmp_path):
        service = WeightConfigService(JsonConfigStore(str(tmp_path)))
        service.load_all_category_weights()

        tuned = {"pet": {"hash": 0.1, "color": 0.5, "shape": 0.1,
                         "ocr": 0.0, "visual": 0.2, "objects": 0.1}}
        record = service.save_weights(ALL_WEIGHTS_KEY, "category_weights", tuned,
                                      training_metrics={"accuracy": 0.91})
        assert record["version"] == 1

        table = service.load_all_category_weights()
        assert table["pet"].color == 0.5
        assert table["keys"] == CATEGORY_WEIGHTS["keys"]

    def test_single_category_override(self, tmp_path):
        store = JsonConfigStore(str(tmp_path))
        store.create_new_version(category_key("keys"), "category_weights",
                                 {"SHAPE": 0.6, "HASH": 0.4, "COLOR": 0, "OCR": 0,
                                  "VISUAL_FEATURES": 0, "DETECTED_OBJECTS": 0})
        weights = WeightConfigService(store).load_category_weights("keys")
        assert weights == WeightVector(hash=0.4, color=0, shape=0.6, ocr=0, visual=0, objects=0)

    def test_threshold_override_merges(self, tmp_path):
        store = JsonConfigStore(str(tmp_path))
        store.create_new_version(THRESHOLDS_KEY, "thresholds", {"OVERALL_MATCH_MIN": 45})
        thresholds = WeightConfigService(store).load_thresholds()
        assert thresholds["OVERALL_MATCH_MIN"] == 45
        assert thresholds["LICENSE_PLATE_EXACT"] == THRESHOLDS["LICENSE_PLATE_EXACT"]

    def test_hot_reload_rereads_store(self, tmp_path):
        store = JsonConfigStore(str(tmp_path))
        service = WeightConfigService(store)
        assert service.load_thresholds()["OVERALL_MATCH_MIN"] == THRESHOLDS["OVERALL_MATCH_MIN"]

        store.create_new_version(THRESHOLDS_KEY, "thresholds", {"OVERALL_MATCH_MIN": 50})
        service.hot_reload()
        assert service.load_thresholds()["OVERALL_MATCH_MIN"] == 50

    def test_save_without_store(self):
        with pytest.raises(RuntimeError, match="No config store"):
            WeightConfigService().save_weights("x", "t", {})

    def test_save_errors_propagate(self):
        with pytest.raises(ConnectionError):
            WeightConfigService(BrokenStore()).save_weights("x", "t", {})
