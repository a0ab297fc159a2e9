from .builder import ConfigBuilder, build_spec, validate_spec
from .manager import ConfigManager, apply_logging_from_cfg

__all__ = ["ConfigBuilder", "ConfigManager", "apply_logging_from_cfg", "build_spec", "validate_spec"]
