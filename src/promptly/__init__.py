"""Promptly Printed - competitions, credits and Prodigi order backend."""

__version__ = "0.3.0"

from promptly.core.config import PromptlyConfig, config

__all__ = [
    "PromptlyConfig",
    "config",
]
