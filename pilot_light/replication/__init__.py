"""Cross-region replica consistency validation."""

from .data_validator import DataValidator, TableValidation, ValidationReport, match_percentage

__all__ = ['DataValidator', 'TableValidation', 'ValidationReport', 'match_percentage']
