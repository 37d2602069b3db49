"""
Test data lifecycle core.

Repositories of test data, point-in-time snapshots, cleanup rules and
synthetic data templates, exposed as async services over SQLAlchemy.
"""

__version__ = "0.1.0"
