import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.lgu.accounts import ensure_super_admin
from app.lgu.modules.settings.service import get_or_create_settings
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the super admin and the settings row in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or ""

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///lgu.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        get_or_create_settings(s)
        if admin_email and admin_password:
            ensure_super_admin(s, admin_email, admin_password)
        else:
            print("ADMIN_EMAIL / ADMIN_PASSWORD not set; skipping super admin seed.")

    print("Initialized database (seed_only).")
    if admin_email:
        print(f"Admin email: {admin_email}")
        print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
