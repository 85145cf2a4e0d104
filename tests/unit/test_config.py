"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from rowledger.config import Config, DedupConfig, LimitsConfig, LogBatchConfig, MonitoringConfig, find_config_file


@pytest.mark.unit
class TestDefaults:
    def test_recognized_options(self):
        config = Config()

        assert config.limits.max_columns == 100
        assert config.limits.max_rows == 5000
        assert config.limits.max_file_size_bytes == 10 * 1024 * 1024
        assert config.dedup.duplicate_overlap_threshold == 2
        assert config.dedup.hash_algorithm == "sha256"
        assert config.log_batches.filename_pattern == r"aimtrainer_results_(\d+)"
        assert config.log_batches.key_fields is None
        assert config.log_batches.default_page_size == 100
        assert config.log_batches.max_page_size == 10000
        assert config.log_batches.recent_batches == 10


@pytest.mark.unit
class TestValidation:
    def test_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            DedupConfig(duplicate_overlap_threshold=0)

    def test_hash_algorithm_is_normalized(self):
        assert DedupConfig(hash_algorithm="SHA1").hash_algorithm == "sha1"

    @pytest.mark.parametrize("algorithm", ["whirlpool-9000", "shake_128"])
    def test_unusable_hash_algorithms(self, algorithm):
        with pytest.raises(ValidationError):
            DedupConfig(hash_algorithm=algorithm)

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            LimitsConfig(max_rows=0)

    def test_empty_key_fields(self):
        with pytest.raises(ValidationError):
            LogBatchConfig(key_fields=[])

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            LogBatchConfig(default_page_size=0)

    def test_log_level(self):
        assert MonitoringConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            MonitoringConfig(log_level="chatty")

    def test_log_file_parent_is_created(self, tmp_path):
        config = MonitoringConfig(log_file=tmp_path / "logs" / "rowledger.log")
        assert Path(config.log_file).parent.is_dir()


@pytest.mark.unit
class TestLoading:
    def test_from_yaml(self, tmp_path):
        path = tmp_path / "rowledger.yaml"
        path.write_text(
            "limits:\n  max_rows: 10\n"
            "dedup:\n  duplicate_overlap_threshold: 3\n"
            f"storage:\n  sqlite:\n    db_path: {tmp_path / 'db' / 'corpus.db'}\n",
            encoding="utf-8",
        )

        config = Config.from_yaml(path)

        assert config.limits.max_rows == 10
        assert config.dedup.duplicate_overlap_threshold == 3
        assert (tmp_path / "db").is_dir()

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert Config.from_yaml(path).limits.max_rows == 5000

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "missing.yaml")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ROWLEDGER_DEDUP__DUPLICATE_OVERLAP_THRESHOLD", "5")
        assert Config().dedup.duplicate_overlap_threshold == 5

    def test_find_config_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None

        (tmp_path / "rowledger.yml").write_text("{}", encoding="utf-8")
        assert find_config_file() == tmp_path / "rowledger.yml"
