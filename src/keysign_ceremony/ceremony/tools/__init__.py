"""Thin wrappers around the external tools a ceremony drives."""
