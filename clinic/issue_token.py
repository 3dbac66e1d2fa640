"""Print a bearer token for an existing user.

Usage:
    python -m clinic.issue_token doctor@example.com
"""
import sys

from clinic.auth import jwt_handler
from clinic.database import SessionLocal
from clinic.models.user import User


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: python -m clinic.issue_token <email>", file=sys.stderr)
        sys.exit(2)

    email = args[0].strip().lower()
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()

    if user is None:
        print(f"No user with email {email}", file=sys.stderr)
        sys.exit(1)
    print(jwt_handler.create_access_token(subject=user.email, role=user.role))


if __name__ == "__main__":
    main()
