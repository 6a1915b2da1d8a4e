"""
Scheduler package for release update detection.

This package contains:
- Version/build detection from free-form titles
- Version comparison and significance classification
- The update arbiter and its pending-update queue
- Sequel, edition and DLC relation matching
- Per-account check scheduling and alerting
"""

__version__ = "1.0.0"
__author__ = "Release Tracker"
