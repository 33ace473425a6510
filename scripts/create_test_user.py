import sys
import os

# Add the project root to the Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, project_root)

from coinduel.core.database import db
from coinduel.core.security import SESSION_COOKIE, sign_session


def create_test_user(username="testuser", coins=None):
    """Creates a test user and prints a session cookie for it."""
    # db.create_user already checks for existing users
    result = db.create_user(username, coins)

    if result.get("success"):
        print(f"Successfully created user '{username}' with {result['user']['total_coins']} coins.")
    elif result.get("error") == "Username already taken":
        print(f"User '{username}' already exists.")
    else:
        print(f"Failed to create user: {result.get('error')}")
        return

    print(f"Cookie: {SESSION_COOKIE}={sign_session(username)}")


if __name__ == "__main__":
    name = sys.argv[1] if len(sys.argv) > 1 else "testuser"
    create_test_user(name, int(sys.argv[2]) if len(sys.argv) > 2 else None)
