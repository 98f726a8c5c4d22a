"""Podcaster: content submissions to podcast episodes, served through a cached feed."""

__version__ = "0.1.0"
