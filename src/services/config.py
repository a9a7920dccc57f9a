"""
Pipeline tunables with environment overrides.

Every threshold here started life as an empirically chosen constant; override through
``INCIDENT_*`` environment variables (or a ``.env`` file at the repository root) while
validating against labelled data.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
ASSETS_DIR = REPO_ROOT / "assets"
KEYWORDS_PATH = ASSETS_DIR / "incident_keywords.json"
GAZETTEER_PATH = ASSETS_DIR / "gazetteer.json"

ENV_PREFIX = "INCIDENT_"


@dataclass
class PipelineConfig:
    # Hashing and dedup
    num_perm: int = 128
    shingle_size: int = 3
    min_tokens: int = 5
    hash_seed: int = 1
    lsh_bands: int = 16
    lsh_rows: int = 8
    similarity_threshold: float = 0.8
    dedup_window_hours: float = 24.0

    # Extraction
    min_confidence: int = 30
    persist_confidence: int = 40
    location_bonus: int = 20
    no_location_penalty: int = 20
    unresolved_floor: int = 10
    max_incidents_per_article: int = 3
    incident_merge_window_minutes: float = 60.0
    incident_match_radius_km: float = 0.1
    incident_match_window_hours: float = 24.0
    incident_title_similarity: float = 0.7
    default_location_name: str = "Tehran"
    default_location_lat: float = 35.6892
    default_location_lon: float = 51.389
    default_location_address: str = "Tehran, Iran"
    include_geonames: bool = True

    # Geocoding
    geocode_workers: int = 4
    geocode_cache_ttl_hours: float = 24.0 * 30
    geocode_failure_ttl_hours: float = 24.0 * 7
    geocode_cache_size: int = 2048
    nominatim_min_interval: float = 1.1
    nominatim_user_agent: str = "incident-pipeline/0.1 (ops@example.org)"

    # Corroboration
    corroboration_radius_km: float = 1.0
    corroboration_window_hours: float = 2.0
    corroboration_max_boost: int = 60
    corroboration_bonus_reporters: int = 4
    corroboration_bonus: int = 20
    verify_confidence: int = 80
    verify_min_reporters: int = 2
    media_hamming_threshold: int = 5
    coordination_window_minutes: float = 60.0
    coordination_similarity: float = 0.8
    suspicion_floor: float = 50.0
    analysis_window_hours: float = 24.0

    # Persistence and fetch
    batch_size: int = 500
    fetch_workers: int = 4

    keywords_path: Path = field(default=KEYWORDS_PATH)
    gazetteer_path: Path = field(default=GAZETTEER_PATH)

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(hours=self.dedup_window_hours)

    @property
    def incident_merge_window(self) -> timedelta:
        return timedelta(minutes=self.incident_merge_window_minutes)

    @property
    def incident_match_window(self) -> timedelta:
        return timedelta(hours=self.incident_match_window_hours)

    @property
    def corroboration_window(self) -> timedelta:
        return timedelta(hours=self.corroboration_window_hours)

    @property
    def coordination_window(self) -> timedelta:
        return timedelta(minutes=self.coordination_window_minutes)

    @property
    def geocode_cache_ttl(self) -> timedelta:
        return timedelta(hours=self.geocode_cache_ttl_hours)

    @property
    def geocode_failure_ttl(self) -> timedelta:
        return timedelta(hours=self.geocode_failure_ttl_hours)

    @property
    def analysis_window(self) -> timedelta:
        return timedelta(hours=self.analysis_window_hours)

    @classmethod
    def from_env(cls, dotenv_path: Path | None = None) -> "PipelineConfig":
        """Build a config from defaults overridden by INCIDENT_<FIELD> environment variables."""
        if load_dotenv(dotenv_path=dotenv_path or REPO_ROOT / ".env"):
            LOGGER.debug("Loaded environment variables from .env file.")
        config = cls()
        for entry in fields(cls):
            raw = os.getenv(f"{ENV_PREFIX}{entry.name.upper()}")
            if raw is None or raw == "":
                continue
            current = getattr(config, entry.name)
            try:
                setattr(config, entry.name, _coerce(raw, current))
            except ValueError:
                LOGGER.warning("Ignoring invalid value %r for %s%s", raw, ENV_PREFIX, entry.name.upper())
        return config


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path):
        return Path(raw)
    return raw
