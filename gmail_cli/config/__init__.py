"""Configuration management for gmail-cli."""

from .settings import Config, DEFAULT_CONFIG_DIR
from .policy import DANGEROUS_LABELS, GMAIL_LABEL_COLORS

__all__ = ["Config", "DEFAULT_CONFIG_DIR", "DANGEROUS_LABELS", "GMAIL_LABEL_COLORS"]
