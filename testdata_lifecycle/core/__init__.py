"""
Core utilities shared by the services.

This package provides:
- Application-level settings (separate from DB settings)
- Logging configuration with correlation/owner context
- The lifecycle error taxonomy
"""
