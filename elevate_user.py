"""Change a user's role from the command line.

Usage:
    python elevate_user.py <email> [admin|librarian|member]
"""
import sys

from database import SessionLocal
import models


def run(email: str, role: str = "admin"):
    try:
        role = models.UserRole(role).value
    except ValueError:
        print("Unknown role:", role)
        return 1
    db = SessionLocal()
    try:
        user = db.query(models.User).filter(models.User.email == email).first()
        if not user:
            print("User not found:", email)
            return 1
        print("Before:", user.id, user.email, user.role)
        user.role = role
        db.commit()
        db.refresh(user)
        print("After:", user.id, user.email, user.role)
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python elevate_user.py <email> [admin|librarian|member]")
        sys.exit(1)
    sys.exit(run(*sys.argv[1:3]))
