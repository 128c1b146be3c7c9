"""
progmeta - Program build and metadata service

Builds programs from git repositories or tar archives through an external
build tool, one at a time, and stores their Cargo.toml metadata under the
content hash of the built binary.
"""

__version__ = "0.1.0"


__all__ = ["ProgmetaConfig", "load_config", "get_progmeta_home"]

from .config import ProgmetaConfig, load_config, get_progmeta_home
