"""Tagging and natural key module."""

from tierstack.tagging.manager import NaturalKey, TagManager

__all__ = ["NaturalKey", "TagManager"]
