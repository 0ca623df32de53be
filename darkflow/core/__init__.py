"""Darkflow core: records, addressing, binary layouts, credentials."""
