"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

DEFAULT_OFAC_URL = "https://sanctionslistservice.ofac.treas.gov/api/PublicationPreview/exports/SDN_ENHANCED.ZIP"
DEFAULT_UN_URL = "https://scsanctions.un.org/resources/xml/en/consolidated.xml"


@dataclass
class MatchingConfig:
    """Matching configuration parameters"""
    threshold: float = 0.8
    include_aliases: bool = True
    max_results: int = 50
    min_term_length: int = 3
    risk_levels: Dict[str, float] = field(default_factory=lambda: {
        'critical': 0.95,
        'high': 0.85,
        'medium': 0.75
    })
    recommendation_thresholds: Dict[str, int] = field(default_factory=lambda: {
        'reject': 85,
        'manual_review': 70,
        'enhanced_due_diligence': 50
    })
    score_weights: Dict[str, float] = field(default_factory=lambda: {
        'max': 0.7,
        'mean': 0.3
    })


@dataclass
class SourceConfig:
    """One watchlist source"""
    name: str
    url: str
    enabled: bool = True
    weight: float = 1.0


@dataclass
class DataConfig:
    """Feed refresh configuration"""
    staleness_hours: float = 24
    download_timeout: float = 120
    retry_interval_seconds: float = 300


@dataclass
class PerformanceConfig:
    """Performance configuration"""
    batch_size: int = 10
    isolate_batch_failures: bool = True
    max_workers: int = 4


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Composite Name Matcher"
    last_updated: str = "2026-01-01"


def _default_sources() -> Dict[str, SourceConfig]:
    return {
        'ofac': SourceConfig(name='OFAC', url=DEFAULT_OFAC_URL),
        'un': SourceConfig(name='UN', url=DEFAULT_UN_URL),
    }


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.sources: Dict[str, SourceConfig] = _default_sources()
        self.data: DataConfig = DataConfig()
        self.performance: PerformanceConfig = PerformanceConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file

        Raises:
            ConfigurationError: If the file is unreadable, not valid YAML or
                holds out-of-range values
        """
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        try:
            self._parse_matching()
            self._parse_sources()
            self._parse_data()
            self._parse_performance()
            self._parse_logging()
            self._parse_algorithm()
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}")
        self._validate()
        logger.info(f"✓ Configuration loaded from {self.config_path}")

    def _section(self, name: str) -> Dict[str, Any]:
        cfg = self._raw_config.get(name) or {}
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        return cfg

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._section('matching')
        defaults = MatchingConfig()
        self.matching = MatchingConfig(
            threshold=float(cfg.get('threshold', defaults.threshold)),
            include_aliases=bool(cfg.get('include_aliases', defaults.include_aliases)),
            max_results=int(cfg.get('max_results', defaults.max_results)),
            min_term_length=int(cfg.get('min_term_length', defaults.min_term_length)),
            risk_levels={**defaults.risk_levels, **(cfg.get('risk_levels') or {})},
            recommendation_thresholds={**defaults.recommendation_thresholds,
                                       **(cfg.get('recommendation_thresholds') or {})},
            score_weights={**defaults.score_weights, **(cfg.get('score_weights') or {})}
        )

    def _parse_sources(self) -> None:
        """Parse watchlist source configuration"""
        cfg = self._section('sources')
        sources = _default_sources()
        for key, source_cfg in cfg.items():
            source_cfg = source_cfg or {}
            base = sources.get(key)
            if base is None:
                raise ConfigurationError(f"Unknown watchlist source: {key}")
            sources[key] = SourceConfig(
                name=base.name,
                url=source_cfg.get('url', base.url),
                enabled=bool(source_cfg.get('enabled', base.enabled)),
                weight=float(source_cfg.get('weight', base.weight))
            )
        self.sources = sources

    def _parse_data(self) -> None:
        """Parse feed refresh configuration"""
        cfg = self._section('data')
        defaults = DataConfig()
        self.data = DataConfig(
            staleness_hours=float(cfg.get('staleness_hours', defaults.staleness_hours)),
            download_timeout=float(cfg.get('download_timeout', defaults.download_timeout)),
            retry_interval_seconds=float(cfg.get('retry_interval_seconds', defaults.retry_interval_seconds))
        )

    def _parse_performance(self) -> None:
        """Parse performance configuration"""
        cfg = self._section('performance')
        defaults = PerformanceConfig()
        self.performance = PerformanceConfig(
            batch_size=int(cfg.get('batch_size', defaults.batch_size)),
            isolate_batch_failures=bool(cfg.get('isolate_batch_failures', defaults.isolate_batch_failures)),
            max_workers=int(cfg.get('max_workers', defaults.max_workers))
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._section('logging')
        self.logging = LoggingConfig(
            level=str(cfg.get('level', 'INFO')).upper(),
            file=cfg.get('file'),
            console=bool(cfg.get('console', True)),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._section('algorithm')
        defaults = AlgorithmConfig()
        self.algorithm = AlgorithmConfig(
            version=str(cfg.get('version', defaults.version)),
            name=cfg.get('name', defaults.name),
            last_updated=str(cfg.get('last_updated', defaults.last_updated))
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def enabled_sources(self) -> List[SourceConfig]:
        """Enabled sources in configuration order"""
        return [source for source in self.sources.values() if source.enabled]

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'threshold': self.matching.threshold,
                'include_aliases': self.matching.include_aliases,
                'max_results': self.matching.max_results,
                'min_term_length': self.matching.min_term_length,
                'risk_levels': self.matching.risk_levels,
                'recommendation_thresholds': self.matching.recommendation_thresholds,
                'score_weights': self.matching.score_weights
            },
            'sources': {
                key: {
                    'name': source.name,
                    'url': source.url,
                    'enabled': source.enabled,
                    'weight': source.weight
                } for key, source in self.sources.items()
            },
            'data': {
                'staleness_hours': self.data.staleness_hours,
                'download_timeout': self.data.download_timeout,
                'retry_interval_seconds': self.data.retry_interval_seconds
            },
            'performance': {
                'batch_size': self.performance.batch_size,
                'isolate_batch_failures': self.performance.isolate_batch_failures,
                'max_workers': self.performance.max_workers
            },
            'logging': {
                'level': self.logging.level,
                'file': self.logging.file,
                'console': self.logging.console
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name,
                'last_updated': self.algorithm.last_updated
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid value found
        """
        m = self.matching
        if not 0.0 <= m.threshold <= 1.0:
            raise ConfigurationError(f"matching.threshold must be between 0 and 1, got {m.threshold}")
        if m.max_results < 1:
            raise ConfigurationError("matching.max_results must be at least 1")
        if m.min_term_length < 1:
            raise ConfigurationError("matching.min_term_length must be at least 1")

        for key in ('critical', 'high', 'medium'):
            value = m.risk_levels.get(key)
            if value is None or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"matching.risk_levels.{key} must be between 0 and 1")
        if not m.risk_levels['critical'] >= m.risk_levels['high'] >= m.risk_levels['medium']:
            raise ConfigurationError("matching.risk_levels must satisfy critical >= high >= medium")

        rec = m.recommendation_thresholds
        for key in ('reject', 'manual_review', 'enhanced_due_diligence'):
            value = rec.get(key)
            if value is None or not 0 <= value <= 100:
                raise ConfigurationError(f"matching.recommendation_thresholds.{key} must be between 0 and 100")
        if not rec['reject'] > rec['manual_review'] > rec['enhanced_due_diligence']:
            raise ConfigurationError(
                "matching.recommendation_thresholds must satisfy "
                "reject > manual_review > enhanced_due_diligence"
            )

        weights = m.score_weights
        if set(weights) != {'max', 'mean'}:
            raise ConfigurationError("matching.score_weights must define exactly 'max' and 'mean'")
        if abs(weights['max'] + weights['mean'] - 1.0) > 1e-6:
            raise ConfigurationError("matching.score_weights must sum to 1")

        for key, source in self.sources.items():
            if source.weight < 0:
                raise ConfigurationError(f"sources.{key}.weight must not be negative")
            if source.enabled and not source.url:
                raise ConfigurationError(f"sources.{key}.url is required for an enabled source")

        if self.performance.batch_size < 1:
            raise ConfigurationError("performance.batch_size must be at least 1")
        if self.performance.max_workers < 1:
            raise ConfigurationError("performance.max_workers must be at least 1")
        if self.data.download_timeout <= 0:
            raise ConfigurationError("data.download_timeout must be positive")
        if self.data.staleness_hours <= 0:
            raise ConfigurationError("data.staleness_hours must be positive")
        if self.data.retry_interval_seconds < 0:
            raise ConfigurationError("data.retry_interval_seconds must not be negative")

        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ConfigurationError(f"Unknown logging.level: {self.logging.level}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def configure_logging(config: Optional[ConfigManager] = None) -> None:
    """Apply the logging section: console and/or file handlers at the configured level"""
    cfg = (config or get_config()).logging
    handlers: List[logging.Handler] = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    if cfg.file:
        log_path = Path(cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding='utf-8'))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(level=cfg.level, format=cfg.format, handlers=handlers, force=True)
