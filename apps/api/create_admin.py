#!/usr/bin/env python3
"""
Create the first super admin and print the otpauth URL for the authenticator app
"""

import argparse
import getpass
import os
import sys
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from sqlmodel import Session, select

from auth import totp_provisioning_uri
from database import create_db_and_tables, engine
from errors import AppError
from models import User, UserType
from services.accounts import create_account
from validators.password_validator import PasswordValidator


def create_admin(username: str, name: str, email: str, password: str) -> int:
    create_db_and_tables()
    with Session(engine) as session:
        if session.exec(select(User).where(User.is_super_admin == True)).first():
            print("A super admin already exists")
            return 1

        try:
            admin = create_account(
                session,
                username=username,
                name=name,
                email=email,
                password=password,
                user_type=UserType.SUPER_ADMIN,
                two_factor_enabled=True,
            )
        except AppError as e:
            print(f"❌ Error creating super admin: {e.detail}")
            return 1

        print("✅ Super admin created successfully!")
        print(f"   Username: {admin.username}")
        print(f"   Email: {admin.email}")
        print("   Add this URL to an authenticator app before logging in:")
        print(f"   {totp_provisioning_uri(admin.two_factor_secret, admin.email)}")
        return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the first super admin")
    parser.add_argument("--username", default=os.getenv("ADMIN_USERNAME", "admin"))
    parser.add_argument("--name", default=os.getenv("ADMIN_NAME", "Super Admin"))
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL"))
    args = parser.parse_args()

    if not args.email:
        parser.error("--email (or ADMIN_EMAIL) is required")

    password = os.getenv("ADMIN_PASSWORD") or getpass.getpass("Password: ")
    is_valid, error_message = PasswordValidator.validate(password)
    if not is_valid:
        print(f"❌ {error_message}")
        return 1

    return create_admin(args.username, args.name, args.email, password)


if __name__ == "__main__":
    sys.exit(main())
