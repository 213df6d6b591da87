"""
Placeflow - Place Import & Enrichment Engine

Async pipeline that parses bulk place exports, validates them, enriches them
against an external place-lookup service and persists the results through a
durable job queue.
"""

__version__ = "0.1.0"
