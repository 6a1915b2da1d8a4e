"""
FastAPI consumer API for the Release Tracker.

This module provides a REST API for:
- On-demand account check cycles
- Approving and rejecting pending updates
- Verifying tracked versions
- Resolving relation candidates
- Scheduler status and refresh
"""
