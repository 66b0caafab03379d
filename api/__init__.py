"""
HTTP API of the ingestion service.
"""

__version__ = "1.0.0"
