"""
Utility functions for core operations.
"""

from .bson_convert import bson_safe, parse_document_id

__all__ = ["bson_safe", "parse_document_id"]
