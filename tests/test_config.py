"""
Tests for feedvault.config — settings, component validation, load_config.
"""

import json

import pytest

from feedvault.config import (
    AdmissionConfig,
    QuotaConfig,
    SanitizerConfig,
    Settings,
    StoreConfig,
    ValidationError,
    VaultConfig,
    load_config,
)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.max_records == 1000
        assert s.auto_cleanup is True
        assert s.cleanup_days == 30
        assert (s.warning_threshold, s.critical_threshold) == (0.8, 0.95)
        assert s.validate() == []

    def test_max_records_zero(self):
        assert any("max_records" in e for e in Settings(max_records=0).validate())

    def test_bool_rejected_as_int(self):
        assert any("max_records" in e for e in Settings(max_records=True).validate())

    def test_threshold_out_of_range(self):
        errors = Settings(critical_threshold=1.5).validate()
        assert any("critical_threshold" in e for e in errors)

    def test_warning_above_critical(self):
        errors = Settings(warning_threshold=0.9, critical_threshold=0.85).validate()
        assert any("must not exceed" in e for e in errors)

    def test_non_bool_flag(self):
        errors = Settings(save_videos="yes").validate()
        assert any("save_videos" in e for e in errors)

    def test_merged(self):
        s = Settings().merged({"max_records": 200, "save_videos": True})
        assert s.max_records == 200
        assert s.save_videos is True
        assert s.cleanup_days == 30

    def test_merged_unknown_key(self):
        with pytest.raises(ValidationError, match="Unknown settings: colour"):
            Settings().merged({"colour": "red"})

    def test_from_dict_ignores_unknown(self):
        s = Settings.from_dict({"max_records": 5, "legacy": 1})
        assert s.max_records == 5


# ---------------------------------------------------------------------------
# Component configs
# ---------------------------------------------------------------------------


class TestComponentValidation:
    def test_all_defaults_valid(self):
        assert VaultConfig().validate() == []

    def test_sanitizer_empty_hosts(self):
        errors = SanitizerConfig(allowed_hosts=[]).validate()
        assert any("allowed_hosts" in e for e in errors)

    def test_admission_zero_requests(self):
        errors = AdmissionConfig(max_requests=0).validate()
        assert any("max_requests" in e for e in errors)

    def test_admission_float_interval_accepted(self):
        assert AdmissionConfig(drain_interval_s=0.5).validate() == []

    def test_quota_fraction_above_one(self):
        errors = QuotaConfig(aggressive_fraction=1.2).validate()
        assert any("aggressive_fraction" in e for e in errors)

    def test_quota_capacity_override(self):
        assert QuotaConfig(capacity_bytes=4096).validate() == []
        assert QuotaConfig(capacity_bytes=0).validate()

    def test_store_event_log_capacity(self):
        assert StoreConfig(event_log_capacity=0).validate()

    def test_expected_type_message_for_tuple_types(self):
        errors = AdmissionConfig(staleness_s="long").validate()
        assert any("expected int|float" in e for e in errors)


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_none_returns_defaults(self):
        cfg = load_config(None)
        assert cfg.store.db_path == ".feedvault/vault.db"

    def test_missing_file_returns_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "absent.json"))
        assert cfg.admission.max_requests == 20

    def test_invalid_json_returns_defaults(self, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{not json", encoding="utf-8")
        assert load_config(str(p)).quota.cleanup_batch_size == 50

    def test_reads_sections(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({
            "store": {"db_path": "x.db"},
            "admission": {"max_requests": 5, "window_ms": 1000},
            "settings": {"max_records": 50},
        }), encoding="utf-8")
        cfg = load_config(str(p))
        assert cfg.store.db_path == "x.db"
        assert cfg.admission.max_requests == 5
        assert cfg.settings.max_records == 50

    def test_unknown_key_falls_back(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"admission": {"burst": 3}}), encoding="utf-8")
        assert load_config(str(p)).admission.max_requests == 20

    def test_strict_raises(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"settings": {"max_records": 0}}), encoding="utf-8")
        with pytest.raises(ValidationError, match="max_records"):
            load_config(str(p), strict=True)

    def test_non_strict_keeps_invalid(self, tmp_path):
        p = tmp_path / "cfg.json"
        p.write_text(json.dumps({"settings": {"max_records": 0}}), encoding="utf-8")
        assert load_config(str(p)).settings.max_records == 0
