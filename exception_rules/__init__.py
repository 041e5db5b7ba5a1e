"""
Exception rule engine.

Lets users register short-text exception rules that justify pausing or
early-completing a task, and keeps track of how those rules are used.
"""

__version__ = "0.1.0"
