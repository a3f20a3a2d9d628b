"""In-memory device trees, source tracking, and DTS and YAML output."""

__version__ = "1.6.1"

__all__ = ["livetree", "srcpos", "treesource", "util", "yamltree"]