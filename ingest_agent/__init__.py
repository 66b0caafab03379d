"""
Ingestion core: stateful incremental collection, remote plugin bridge and
migration gate.
"""

__version__ = "1.0.0"
