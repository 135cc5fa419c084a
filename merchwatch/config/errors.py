from __future__ import annotations


class ConfigLoaderError(RuntimeError):
    """Configuration is missing or cannot be validated."""
