"""
Repository layer for data access.

Repositories encapsulate SQLAlchemy queries for each aggregate (test data
repositories and their records, snapshots and payloads, cleanup rules,
synthetic data templates). Services own transactions and business rules.
"""
