from pqdemo.config.loader import (
    build_config,
    load_config,
    load_properties,
    parse_properties,
    properties_from_env,
)

__all__ = [
    "build_config",
    "load_config",
    "load_properties",
    "parse_properties",
    "properties_from_env",
]
