"""Signing ceremony components.

Provides:
- Settings loaded from .env
- Structured logging
- Wrappers for the volume, secret-store, discovery and gpg tools
- The step sequencer and the concrete ceremony
"""
