"""
Rule models and storage interfaces.
"""
