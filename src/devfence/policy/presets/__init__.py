"""Bundled policy presets."""
