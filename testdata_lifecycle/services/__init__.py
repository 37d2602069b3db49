"""Lifecycle services: orchestration and business rules on top of the repositories."""
