"""
Tracker package: tracked-release models, MongoDB storage and the listing client.
"""

__version__ = "1.0.0"
__author__ = "Release Tracker"
