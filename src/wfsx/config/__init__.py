"""
Configuration module for the WFS extractor.
"""

from .settings import (
    AdminCredentials,
    Config,
    ConfigurationError,
    ServiceConfig,
)

__all__ = [
    'Config',
    'ConfigurationError',
    'AdminCredentials',
    'ServiceConfig',
]
