"""Scrobble Rockbox playback logs to Last.fm and Libre.fm."""

__version__ = "0.3.0"
