"""
hanyu_sync - offline-first progress and cache reconciliation for a Mandarin
learning client.
"""

__version__ = "0.1.0"
