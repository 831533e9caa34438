"""Configuration management."""

from shopkeeper.config.settings import AppConfig

__all__ = ["AppConfig"]
