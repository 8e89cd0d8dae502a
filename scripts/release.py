"""
Release phase: run migrations, then seed the settings row and super admin.

Refuses to run against SQLite in production. Missing payment or mail
credentials only warn; the API starts without them and the affected endpoints
answer 500 until they are configured.

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

OPTIONAL_PROD_VARS = (
    "PAYMONGO_SECRET_KEY",
    "PAYMONGO_WEBHOOK_SECRET",
    "MAILGUN_API_KEY",
    "MAILGUN_DOMAIN",
    "FRONTEND_URL",
)


def _env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def check_environment() -> str:
    """Returns DATABASE_URL. Raises RuntimeError on a configuration that must not ship."""
    db_url = _env("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set. Configure it before running the release.")
    env = _env("ENV").lower()
    if env in ("prod", "production"):
        if db_url.startswith("sqlite"):
            raise RuntimeError("Refusing to release against SQLite in production. Point DATABASE_URL at Postgres.")
        missing = [name for name in OPTIONAL_PROD_VARS if not _env(name)]
        if missing:
            print(f"WARNING: not configured: {', '.join(missing)}", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release(*, seed: bool = True) -> None:
    db_url = check_environment()

    print("Applying migrations (alembic upgrade head)...", flush=True)
    migrate(db_url)

    if seed:
        from scripts import init_db

        print("Seeding portal settings and super admin...", flush=True)
        init_db.seed_only(database_url=db_url)
    print("Release complete.", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the LGU portal database.")
    parser.add_argument("--skip-seed", action="store_true", help="only run migrations")
    args = parser.parse_args(argv)
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
