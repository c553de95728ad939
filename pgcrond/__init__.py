"""
pgcrond

Minute-granularity scheduler for PostgreSQL jobs.
"""

__version__ = "1.0.0"
