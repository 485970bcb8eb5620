"""
Natal chart engine.

Computes natal charts from birth data and serves them through a
cache-first, rate-limited, offline-tolerant pipeline.
"""

__version__ = "1.0.0"
