#!/usr/bin/env python3
"""
Development Database Reset and Seed Utility

Drops and recreates the workspace sync schema, then seeds a free and a premium
account so two clients can exercise workspace sync and table sharing locally.

Usage:
    python dev_reset.py                    # Reset and create the seed accounts
    python dev_reset.py --skip-reset       # Only create accounts (don't reset DB)
    python dev_reset.py --user-only EMAIL  # Create a single custom account

Safety: This script will ONLY run in development mode. It checks:
    - DATABASE_URL must point at sqlite or localhost
    - Will prompt for confirmation before resetting
"""

import sys
import argparse
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv()

from sqlalchemy.orm import Session
from app.config import DATABASE_URL
from app.database import SessionLocal, engine
from app.services.auth_service import create_user, get_user_by_email
from app.schemas.user import UserCreate
from app.models.models import Base, Subscription


class Colors:
    HEADER = '\033[95m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'

def print_header(text):
    print(f"\n{Colors.HEADER}{Colors.BOLD}{text}{Colors.ENDC}")

def print_success(text):
    print(f"{Colors.OKGREEN}✓ {text}{Colors.ENDC}")

def print_warning(text):
    print(f"{Colors.WARNING}⚠ {text}{Colors.ENDC}")

def print_error(text):
    print(f"{Colors.FAIL}✗ {text}{Colors.ENDC}")

def print_info(text):
    print(f"{Colors.OKCYAN}ℹ {text}{Colors.ENDC}")

SEED_USERS = [
    {"email": "owner@example.com", "password": "ownerpass123", "display_name": "Table Owner", "premium": True},
    {"email": "recipient@example.com", "password": "recipient123", "display_name": "Table Recipient", "premium": True},
    {"email": "free@example.com", "password": "freeuser123", "display_name": "Free User", "premium": False},
]

def check_development_environment() -> bool:
    """Verify we're running against a local database"""
    url = DATABASE_URL.lower()
    is_local = url.startswith("sqlite") or any(host in url for host in ['localhost', '127.0.0.1'])

    if not is_local:
        print_error("SAFETY CHECK FAILED!")
        print_error(f"DATABASE_URL does not appear to be local: {DATABASE_URL}")
        return False

    print_success(f"Development environment confirmed: {DATABASE_URL}")
    return True

def confirm_reset() -> bool:
    print_warning("This will DELETE ALL workspaces, shares and accounts in your local database")
    response = input(f"{Colors.BOLD}Are you sure you want to continue? (yes/no): {Colors.ENDC}").strip().lower()
    return response in ['yes', 'y']

def reset_database() -> None:
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

def create_seed_user(db: Session, email: str, password: str, display_name: str, premium: bool = False) -> bool:
    if get_user_by_email(db, email):
        print_warning(f"User {email} already exists, skipping...")
        return False

    user = create_user(db, UserCreate(email=email, password=password, display_name=display_name))
    if premium:
        db.add(Subscription(user_id=user.id, plan='premium', status='active', started_at=datetime.utcnow()))
        db.commit()
    print_success(f"Created {'premium' if premium else 'free'} user: {email} (ID: {user.id})")
    return True

def print_credentials():
    print_header("Seed Account Credentials")
    for seed in SEED_USERS:
        tier = "premium" if seed["premium"] else "free"
        print(f"  {seed['email']:<24} {seed['password']:<14} ({tier})")
    print(f"""
{Colors.BOLD}API Usage Example:{Colors.ENDC}
  POST http://localhost:8000/api/auth/token
  Form: username=owner@example.com&password=ownerpass123
""")

def main():
    parser = argparse.ArgumentParser(description="Reset the development database and seed accounts")
    parser.add_argument('--skip-reset', action='store_true', help='Skip database reset, only create accounts')
    parser.add_argument('--user-only', metavar='EMAIL', help='Create only a single account with this email')
    parser.add_argument('--premium', action='store_true', help='Give the --user-only account a premium plan')
    parser.add_argument('--no-confirm', action='store_true', help='Skip confirmation prompt (use with caution)')
    args = parser.parse_args()

    if not check_development_environment():
        sys.exit(1)

    if not args.skip_reset:
        if not args.no_confirm and not confirm_reset():
            print_info("Reset cancelled by user")
            sys.exit(0)
        print_header("Resetting Database")
        reset_database()
        print_success("Schema recreated")
    else:
        print_info("Skipping database reset")

    db = SessionLocal()
    try:
        if args.user_only:
            password = input("Enter password (or press Enter for 'testpass123'): ").strip() or "testpass123"
            create_seed_user(db, args.user_only, password, "Test User", premium=args.premium)
            print_info(f"Credentials: {args.user_only} / {password}")
        else:
            print_header("Creating Seed Accounts")
            created = sum(create_seed_user(db, **seed) for seed in SEED_USERS)
            print_success(f"Created {created} accounts")
            print_credentials()
    except Exception as e:
        print_error(f"Error during account creation: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()

if __name__ == "__main__":
    main()
