"""
Configuration module for cl-fakechan-audit

Contains the Config dataclass that holds all tunable parameters for the
audit plugin, and the immutable ConfigSnapshot captured at the start of
each audit run.
"""

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict


# Type mapping for config fields (for option parsing and validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'max_concurrent_lookups': int,
    'forwards_page_size': int,
    'audit_on_startup': bool,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'max_concurrent_lookups': (1, 64),
    'forwards_page_size': (0, 1000000),
    'prometheus_port': (1, 65535),
}


def parse_value(key: str, value: Any) -> Any:
    """
    Convert a raw option value to the field's type.

    Raises:
        ValueError: if the key is unknown or the value does not convert
    """
    field_type = CONFIG_FIELD_TYPES.get(key)
    if field_type is None:
        raise ValueError(f"Unknown config key: {key}")
    if field_type == bool:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ('true', '1', 'yes', 'on')
    try:
        return field_type(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {key} (expected {field_type.__name__}): {e}") from e


@dataclass
class Config:
    """
    Configuration container for the audit plugin.

    All values can be set via plugin options at startup.
    """

    # Invalidity detection
    max_concurrent_lookups: int = 8   # Parallel listchannels lookups

    # Forwarding history
    forwards_page_size: int = 0       # 0 = single listforwards call, >0 = paginate by created_index

    # Run one audit in the background as soon as the plugin starts
    audit_on_startup: bool = False

    # Prometheus Metrics
    enable_prometheus: bool = False   # If True, export the last audit result over HTTP
    prometheus_port: int = 9810       # Port for Prometheus HTTP server

    @classmethod
    def from_options(cls, options: Dict[str, Any], prefix: str = 'fakechan-') -> 'Config':
        """
        Build a Config from plugin options.

        Option names are the field names with '_' replaced by '-' and
        `prefix` prepended. Missing options keep their defaults.
        """
        values = {}
        for f in fields(cls):
            option = prefix + f.name.replace('_', '-')
            if option in options and options[option] is not None:
                values[f.name] = parse_value(f.name, options[option])
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        """
        Check every ranged field.

        Raises:
            ValueError: on the first out-of-range value
        """
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                raise ValueError(f"Value {value} out of range [{min_val}, {max_val}] for {key}")

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one audit run.

        The audit captures a snapshot at start and uses only that snapshot
        for its duration.
        """
        return ConfigSnapshot.from_config(self)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable configuration snapshot for a single audit run."""
    max_concurrent_lookups: int
    forwards_page_size: int
    audit_on_startup: bool
    enable_prometheus: bool
    prometheus_port: int

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(**asdict(config))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
