"""Shared helpers: retry executor, hue arithmetic, prompt building."""
