#!/usr/bin/env python3
"""
Database setup script for the session store.

Creates the session table if needed and optionally runs a garbage
collection sweep. Pass --gc to sweep expired sessions.
"""

import sys

from dbsession.core.config import get_settings
from dbsession.core.errors import SessionError
from dbsession.db.init_db import init_database


def main(argv=None):
    """Initialize the session table based on configuration"""
    argv = sys.argv[1:] if argv is None else argv
    settings = get_settings()

    print("🗄️  Session Store Database Setup")
    print("=" * 40)
    print(f"Table: {settings.table}")
    print(f"GC threshold: {settings.gc_max_age}s")

    print("\n🔧 Initializing database...")
    try:
        store = init_database(settings)
        print("✅ Session table ready")

        if "--gc" in argv:
            removed = store.garbage_collect(settings.gc_max_age)
            print(f"🧹 Removed {removed} expired session(s)")

        print(f"Stored sessions: {store.count()}")
        return True

    except SessionError as e:
        print(f"❌ Database initialization failed: {e}")
        return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
