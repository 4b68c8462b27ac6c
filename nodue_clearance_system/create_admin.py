import argparse
import getpass
import logging

from werkzeug.security import generate_password_hash

from nodue_clearance_system.database import get_db_connection, init_db

logger = logging.getLogger(__name__)


def create_admin(name, email, password, db_path=None):
    """Insert an admin account; it stays inactive until the first password change."""

    init_db(db_path)
    conn = get_db_connection(db_path)

    try:
        cursor = conn.execute(
            "INSERT INTO admins (name, email, password, is_active) VALUES (?, ?, ?, 0)",
            (name.strip(), email.strip().lower(), generate_password_hash(password))
        )
        conn.commit()
        return cursor.lastrowid

    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create a no due portal admin")
    parser.add_argument("name")
    parser.add_argument("email")
    parser.add_argument("--db", default=None, help="SQLite database path")
    args = parser.parse_args(argv)

    password = getpass.getpass("Temporary password: ")
    admin_id = create_admin(args.name, args.email, password, args.db)

    logger.info("Admin %s created with id %s", args.email, admin_id)
    print(f"Admin {args.email} created. Password must be changed at first login.")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
