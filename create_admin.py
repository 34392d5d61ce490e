#!/usr/bin/env python3
"""
Script to create a root admin account
Usage: python create_admin.py <username> <password> [email]
Example: python create_admin.py root s3cret-pass root@example.com
"""

import sys

from common.error_handling import BusinessLogicError
from company_service.db import SessionLocal, engine
from company_service.models import Base
from company_service import accounts

def main(argv) -> int:
    if len(argv) < 3:
        print("Usage: python create_admin.py <username> <password> [email]")
        return 1

    username, password = argv[1], argv[2]
    email = argv[3] if len(argv) > 3 else None

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        try:
            admin = accounts.create_root_admin(db, username, password, email)
        except BusinessLogicError as e:
            print(f"❌ {e.message}")
            return 1

    print(f"✅ Successfully created admin!")
    print(f"   ID: {admin['id']}")
    print(f"   Username: {admin['username']}")
    print(f"   Role: {admin['role']}")
    return 0

if __name__ == "__main__":
    sys.exit(main(sys.argv))
