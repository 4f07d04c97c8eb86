"""
Versioned, hot-reloadable weight and threshold configuration.

Category weight tables and match thresholds can be retuned at runtime
(e.g. from offline feedback training) without a redeploy. Configs are
stored as numbered versions; the newest version of each config name is
active. Reads go through a TTLCache so the matcher never blocks on the
store, and any store failure falls back to the built-in defaults.
"""

import os
import json
import time
import logging
from typing import Any, Dict, List, Optional, Protocol

from .cache import DEFAULT_TTL_SECONDS, TTLCache
from .weights import CATEGORY_WEIGHTS, THRESHOLDS, WeightVector

logger = logging.getLogger(__name__)

WEIGHT_CACHE_TTL_SECONDS = float(os.environ.get("WEIGHT_CACHE_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))

ALL_WEIGHTS_KEY = "all_category_weights"
THRESHOLDS_KEY = "thresholds"


def category_key(category: str) -> str:
    return f"category_weights_{category}"


class ConfigStore(Protocol):
    """Persistence for versioned configuration documents."""

    def get_active_config(self, name: str) -> Optional[Dict[str, Any]]:
        ...

    def create_new_version(self, name: str, config_type: str, data: Dict[str, Any],
                           training_metrics: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...

    def list_active(self) -> List[Dict[str, Any]]:
        ...


class JsonConfigStore:
    """
    ConfigStore keeping every version of a config in one JSON file.

    Layout: <directory>/<config name>.json holding a list of version
    records, oldest first. The last record is the active one.
    """

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, f"{name}.json")

    def _read(self, name: str) -> List[Dict[str, Any]]:
        path = self._path(name)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def get_active_config(self, name: str) -> Optional[Dict[str, Any]]:
        versions = self._read(name)
        return versions[-1] if versions else None

    def create_new_version(self, name: str, config_type: str, data: Dict[str, Any],
                           training_metrics: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        versions = self._read(name)
        record = {
            "config_name": name,
            "config_type": config_type,
            "version": len(versions) + 1,
            "config_data": data,
            "training_metrics": training_metrics or {},
            "created_at": time.time(),
        }
        versions.append(record)

        tmp_path = self._path(name) + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(versions, f, indent=2)
        os.replace(tmp_path, self._path(name))
        return record

    def list_active(self) -> List[Dict[str, Any]]:
        active = []
        for filename in sorted(os.listdir(self.directory)):
            if filename.endswith(".json"):
                config = self.get_active_config(filename[:-len(".json")])
                if config:
                    active.append(config)
        return active


class WeightConfigService:
    """
    Cached access to category weights and thresholds.

    Args:
        store: ConfigStore holding tuned configs, or None for defaults only.
        ttl_seconds: Cache lifetime before a background refresh.
        cache: Optional pre-built TTLCache (tests inject a fake clock).
    """

    def __init__(self, store: Optional[ConfigStore] = None,
                 ttl_seconds: float = WEIGHT_CACHE_TTL_SECONDS,
                 cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache or TTLCache(ttl_seconds)

    def _fetch(self, name: str) -> Optional[Dict[str, Any]]:
        if self.store is None:
            return None
        config = self.store.get_active_config(name)
        if config and config.get("config_data"):
            logger.debug(f"Loaded {name} from store (v{config.get('version')})")
            return config["config_data"]
        return None

    def load_category_weights(self, category: str) -> WeightVector:
        """Active weights for one category, falling back to the defaults."""
        default = CATEGORY_WEIGHTS.get(category, CATEGORY_WEIGHTS["other"])

        def compute():
            try:
                data = self._fetch(category_key(category))
                return WeightVector.from_mapping(data) if data else default
            except Exception as e:
                logger.warning(f"Error loading {category} weights, using defaults: {e}")
                return default

        return self.cache.get_or_compute(category_key(category), compute)

    def load_all_category_weights(self) -> Dict[str, WeightVector]:
        """The full category table, store overrides merged over the defaults."""
        def compute():
            try:
                data = self._fetch(ALL_WEIGHTS_KEY)
            except Exception as e:
                logger.warning(f"Error loading all weights, using defaults: {e}")
                data = None
            if not data:
                return dict(CATEGORY_WEIGHTS)
            table = dict(CATEGORY_WEIGHTS)
            table.update({name: WeightVector.from_mapping(w) for name, w in data.items()})
            return table

        return self.cache.get_or_compute(ALL_WEIGHTS_KEY, compute)

    def load_thresholds(self) -> Dict[str, float]:
        """Thresholds with store overrides merged over the defaults."""
        def compute():
            try:
                data = self._fetch(THRESHOLDS_KEY)
            except Exception as e:
                logger.warning(f"Error loading thresholds, using defaults: {e}")
                data = None
            return {**THRESHOLDS, **(data or {})}

        return self.cache.get_or_compute(THRESHOLDS_KEY, compute)

    def hot_reload(self) -> None:
        logger.info("Hot-reloading all weights")
        self.cache.clear()

    def invalidate(self, key: str) -> None:
        self.cache.invalidate(key)
        logger.debug(f"Invalidated cache for: {key}")

    def save_weights(self, name: str, config_type: str, data: Dict[str, Any],
                     training_metrics: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Store a new config version and drop the cached copies.

        Raises:
            RuntimeError: If no store is configured.
        """
        if self.store is None:
            raise RuntimeError("No config store configured")
        try:
            record = self.store.create_new_version(name, config_type, data, training_metrics)
        except Exception as e:
            logger.error(f"Error saving weights {name}: {e}")
            raise

        self.invalidate(name)
        self.invalidate(ALL_WEIGHTS_KEY)
        logger.info(f"Saved new {name} v{record.get('version')}")
        return record

    def get_weight_versions(self) -> Dict[str, Dict[str, Any]]:
        if self.store is None:
            return {}
        return {
            config["config_name"]: {
                "version": config.get("version"),
                "training_metrics": config.get("training_metrics", {}),
                "created_at": config.get("created_at"),
            }
            for config in self.store.list_active()
        }

    def initialize_defaults(self) -> bool:
        """
        Seed an empty store with the built-in tables.

        Returns:
            True if defaults were written, False if configs already exist.
        """
        if self.store is None or self.store.list_active():
            logger.info("Weights already initialized")
            return False
        self.store.create_new_version(
            ALL_WEIGHTS_KEY, "category_weights",
            {name: w.as_dict() for name, w in CATEGORY_WEIGHTS.items()})
        self.store.create_new_version(THRESHOLDS_KEY, "thresholds", dict(THRESHOLDS))
        logger.info("Initialized default weights in store")
        return True
