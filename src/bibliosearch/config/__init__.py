"""Configuration — Settings loaded from environment variables and YAML."""

from bibliosearch.config.settings import Settings

__all__ = ["Settings"]
