"""Concrete drivers for engine infrastructure ports."""
