"""
Domain logic for the exception rule engine.

This package contains the search index, duplication detector, rule cache,
usage tracker and the rule manager that ties them together. None of it
depends on a particular storage backend.
"""
