"""
NEWSTACK realtime sync client

Keeps a live subscription to the backend change feed, turns change events into
breaking-news notifications and story counters, and maintains the bounded
offline story cache used when the device has no connectivity.
"""

__version__ = "0.1.0"
