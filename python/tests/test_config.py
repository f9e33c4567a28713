"""
Unit tests for configuration loading, validation and logging setup
"""

import logging
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import (
    ConfigManager,
    ConfigurationError,
    MatchingConfig,
    DataConfig,
    PerformanceConfig,
    DEFAULT_OFAC_URL,
    DEFAULT_UN_URL,
    configure_logging,
    get_config,
)


@pytest.fixture(autouse=True)
def reset_singleton():
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


def _write(tmp_path, content):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(content)
    return str(config_file)


class TestDefaults:
    """Tests for built-in defaults"""

    def test_default_values(self, tmp_path):
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        assert config.matching.threshold == 0.8
        assert config.matching.max_results == 50
        assert config.matching.risk_levels == {'critical': 0.95, 'high': 0.85, 'medium': 0.75}
        assert config.matching.recommendation_thresholds == {
            'reject': 85, 'manual_review': 70, 'enhanced_due_diligence': 50
        }
        assert config.matching.score_weights == {'max': 0.7, 'mean': 0.3}
        assert config.data.staleness_hours == 24
        assert config.performance.batch_size == 10
        assert config.performance.isolate_batch_failures is True

    def test_default_sources(self, tmp_path):
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        assert [s.name for s in config.enabled_sources()] == ['OFAC', 'UN']
        assert config.sources['ofac'].url == DEFAULT_OFAC_URL
        assert config.sources['un'].url == DEFAULT_UN_URL

    def test_bundled_config_matches_defaults(self):
        config = ConfigManager(str(Path(__file__).parent.parent / "config.yaml"))

        assert config.matching == MatchingConfig()
        assert config.data == DataConfig()
        assert config.performance == PerformanceConfig()

    def test_singleton(self, tmp_path):
        path = _write(tmp_path, "matching:\n  threshold: 0.9\n")
        assert get_config(path) is get_config()
        assert get_config().matching.threshold == 0.9


class TestLoading:
    """Tests for YAML loading"""

    def test_partial_sections_merge_with_defaults(self, tmp_path):
        path = _write(tmp_path, """
matching:
  threshold: 0.85
  risk_levels:
    critical: 0.97
sources:
  un:
    weight: 0.8
performance:
  isolate_batch_failures: false
""")
        config = ConfigManager(path)

        assert config.matching.threshold == 0.85
        assert config.matching.risk_levels == {'critical': 0.97, 'high': 0.85, 'medium': 0.75}
        assert config.sources['un'].weight == 0.8
        assert config.sources['un'].url == DEFAULT_UN_URL
        assert config.performance.isolate_batch_failures is False

    def test_empty_file(self, tmp_path):
        config = ConfigManager(_write(tmp_path, ""))
        assert config.matching.threshold == 0.8

    def test_to_dict(self, tmp_path):
        data = ConfigManager(_write(tmp_path, "")).to_dict()
        assert data['sources']['ofac']['name'] == 'OFAC'
        assert data['matching']['score_weights'] == {'max': 0.7, 'mean': 0.3}

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            ConfigManager(_write(tmp_path, "matching: [unclosed"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(_write(tmp_path, "- a\n- b\n"))

    def test_section_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError, match="matching"):
            ConfigManager(_write(tmp_path, "matching: 5\n"))

    def test_non_numeric_value(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(_write(tmp_path, "matching:\n  threshold: high\n"))

    def test_unknown_source(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Unknown watchlist source"):
            ConfigManager(_write(tmp_path, "sources:\n  eu:\n    url: https://example.test\n"))


class TestValidation:
    """Tests for range and consistency checks"""

    @pytest.mark.parametrize("content", [
        "matching:\n  threshold: 1.5\n",
        "matching:\n  max_results: 0\n",
        "matching:\n  risk_levels:\n    critical: 0.5\n",
        "matching:\n  recommendation_thresholds:\n    manual_review: 90\n",
        "matching:\n  score_weights:\n    max: 0.9\n",
        "matching:\n  score_weights:\n    median: 0.1\n",
        "sources:\n  ofac:\n    weight: -1\n",
        "sources:\n  ofac:\n    url: ''\n",
        "data:\n  download_timeout: 0\n",
        "data:\n  staleness_hours: -2\n",
        "performance:\n  batch_size: 0\n",
        "performance:\n  max_workers: 0\n",
        "logging:\n  level: LOUD\n",
    ])
    def test_invalid_values_rejected(self, tmp_path, content):
        with pytest.raises(ConfigurationError):
            ConfigManager(_write(tmp_path, content))

    def test_disabled_source_needs_no_url(self, tmp_path):
        config = ConfigManager(_write(tmp_path, "sources:\n  un:\n    enabled: false\n    url: ''\n"))
        assert [s.name for s in config.enabled_sources()] == ['OFAC']


class TestLoggingSetup:
    """Tests for configure_logging"""

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "screening.log"
        config = ConfigManager(_write(tmp_path, f"logging:\n  level: debug\n  console: false\n  file: {log_file}\n"))

        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging(config)
            logging.getLogger('screener').debug("written to file")
            for handler in root.handlers:
                handler.flush()

            assert root.level == logging.DEBUG
            assert "written to file" in log_file.read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
            root.setLevel(saved_level)
