"""
setbreak - live-music recording analyzer

Decodes a library of concert recordings, extracts signal features,
derives ten composite jam scores per track and stores them in SQLite,
calibrated against recording loudness.
"""

__version__ = "0.4.0"
__author__ = "setbreak contributors"
