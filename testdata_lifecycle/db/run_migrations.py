"""
Programmatic Alembic migration runner.

Allows running migrations without an alembic.ini by configuring the script location
to this package's migrations directory.

Usage examples:
    python -m testdata_lifecycle.db.run_migrations upgrade head
    python -m testdata_lifecycle.db.run_migrations downgrade -1
    python -m testdata_lifecycle.db.run_migrations current
"""

import sys
from pathlib import Path
from typing import List

from alembic import command
from alembic.config import Config

from testdata_lifecycle.db.config import get_settings


# PUBLIC_INTERFACE
def build_config() -> Config:
    """Alembic Config pointing at the bundled migrations directory."""
    cfg = Config()
    script_location = Path(__file__).resolve().parent / "migrations"
    cfg.set_main_option("script_location", str(script_location))
    # Offline mode reads this; env.py builds its own async engine for online runs
    cfg.set_main_option("sqlalchemy.url", get_settings().sync_database_url)
    return cfg


# PUBLIC_INTERFACE
def upgrade_head() -> None:
    """Bring the schema up to date. Used by job entry points when RUN_MIGRATIONS_ON_STARTUP is set."""
    command.upgrade(build_config(), "head")


# PUBLIC_INTERFACE
def main(argv: List[str] | None = None) -> None:
    """Run an Alembic command with programmatic configuration."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("No Alembic arguments provided. Example: upgrade head")
        sys.exit(1)

    cfg = build_config()
    cmd, other = args[0], args[1:]

    if cmd == "upgrade":
        command.upgrade(cfg, *(other or ["head"]))
    elif cmd == "downgrade":
        command.downgrade(cfg, *(other or ["-1"]))
    elif cmd == "history":
        command.history(cfg, *other)
    elif cmd == "current":
        command.current(cfg, *other)
    elif cmd == "heads":
        command.heads(cfg, *other)
    elif cmd == "show":
        if not other:
            print("Usage: show <revision>")
            sys.exit(2)
        command.show(cfg, other[0])
    else:
        print(f"Unsupported Alembic command: {cmd}")
        sys.exit(2)


if __name__ == "__main__":
    main()
