"""Common utilities and configuration for the DR control plane."""

from .config import Config, load_config
from .errors import (
    ConfigurationError,
    ConflictError,
    DRError,
    InvalidTransitionError,
    TransientError,
    ValidationError,
)
from .logger import get_logger, setup_logging

__all__ = [
    'Config',
    'load_config',
    'ConfigurationError',
    'ConflictError',
    'DRError',
    'InvalidTransitionError',
    'TransientError',
    'ValidationError',
    'get_logger',
    'setup_logging',
]
