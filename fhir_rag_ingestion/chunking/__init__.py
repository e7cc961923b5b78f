"""
Chunking of bulk NDJSON exports into per-resource work items.
"""

from .chunker import Chunker
from .ndjson_reader import Line, ParsedRecord, iter_lines, parse_line

__all__ = ["Chunker", "Line", "ParsedRecord", "iter_lines", "parse_line"]
