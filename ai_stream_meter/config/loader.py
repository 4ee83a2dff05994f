"""
Configuration management and loading.

Handles stream state, progress, recovery and accounting settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml


@dataclass(frozen=True)
class StreamsConfig:
    """Stream state store limits."""
    max_states: int = 10
    expiry_hours: float = 24
    storage_key: str = "omnichat_stream_states"

    def __post_init__(self):
        """Validate store limits are positive."""
        if self.max_states <= 0:
            raise ValueError("max_states must be > 0")
        if self.expiry_hours <= 0:
            raise ValueError("expiry_hours must be > 0")
        if not self.storage_key:
            raise ValueError("storage_key cannot be empty")

    @property
    def expiry_seconds(self) -> float:
        """Expiry window in seconds."""
        return self.expiry_hours * 3600


@dataclass(frozen=True)
class ProgressConfig:
    """Time-based progress heuristic for streams without a known total."""
    tokens_per_second: float = 50
    indeterminate_cap: float = 0.95

    def __post_init__(self):
        """Validate progress values."""
        if self.tokens_per_second <= 0:
            raise ValueError("tokens_per_second must be > 0")
        if not 0 < self.indeterminate_cap <= 1:
            raise ValueError("indeterminate_cap must be in (0, 1]")


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery polling settings."""
    poll_interval_seconds: float = 5

    def __post_init__(self):
        """Validate poll interval is positive."""
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")


@dataclass(frozen=True)
class AccountingConfig:
    """Usage accounting settings."""
    exempt_model_prefixes: Tuple[str, ...] = ("ollama/",)

    def is_exempt(self, model: str) -> bool:
        """Whether usage for this model is exempt from accounting."""
        return any(model.startswith(prefix) for prefix in self.exempt_model_prefixes)


@dataclass(frozen=True)
class MeterConfig:
    """Complete meter configuration."""
    streams: StreamsConfig = field(default_factory=StreamsConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    accounting: AccountingConfig = field(default_factory=AccountingConfig)

    @classmethod
    def default(cls) -> "MeterConfig":
        """Configuration with every setting at its default."""
        return cls()


_SECTION_KEYS = {
    'streams': {'max_states', 'expiry_hours', 'storage_key'},
    'progress': {'tokens_per_second', 'indeterminate_cap'},
    'recovery': {'poll_interval_seconds'},
    'accounting': {'exempt_model_prefixes'},
}


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate meter configuration from YAML file.

    Every section is optional; missing settings take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MeterConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _section(raw_config, name) for name in _SECTION_KEYS
    }

    streams_data = sections['streams']
    streams = StreamsConfig(
        max_states=_positive_int(streams_data, 'max_states', 10, 'streams'),
        expiry_hours=_positive_number(streams_data, 'expiry_hours', 24, 'streams'),
        storage_key=str(streams_data.get('storage_key', "omnichat_stream_states"))
    )

    progress_data = sections['progress']
    progress = ProgressConfig(
        tokens_per_second=_positive_number(progress_data, 'tokens_per_second', 50, 'progress'),
        indeterminate_cap=_positive_number(progress_data, 'indeterminate_cap', 0.95, 'progress')
    )

    recovery = RecoveryConfig(
        poll_interval_seconds=_positive_number(
            sections['recovery'], 'poll_interval_seconds', 5, 'recovery'
        )
    )

    prefixes = sections['accounting'].get('exempt_model_prefixes', ["ollama/"])
    if not isinstance(prefixes, list) or not all(isinstance(p, str) for p in prefixes):
        raise ValueError("'exempt_model_prefixes' in accounting must be a list of strings")
    accounting = AccountingConfig(exempt_model_prefixes=tuple(prefixes))

    return MeterConfig(
        streams=streams,
        progress=progress,
        recovery=recovery,
        accounting=accounting
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated config section, empty if absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _positive_number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    """Read a number that must be > 0."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return float(value)


def _positive_int(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    """Read an integer that must be > 0."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value
