"""
Offline map data manager: keeps installed map, geocoder and postal datasets in
sync with a user subscription and a remote manifest.
"""

__version__ = "0.4.0"
