"""
Token Pipeline - background token data fetching and batch persistence.

This package polls token metrics from an external provider, buffers them in a
bounded queue and commits them to a durable store in deduplicated batches.
"""

__version__ = "1.0.0"
__author__ = "Token Pipeline Team"
