"""
Rule lifecycle events.
"""
