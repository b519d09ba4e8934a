"""Core backend infrastructure.

Configuration, logging, the error taxonomy, the database connection manager
and its background monitor. The bootstrap sequence and the FastAPI
application factory live one level up (``bootstrap``, ``main``).
"""
