"""
Issue a bearer token for local testing against the API.

Production tokens come from the auth platform; this signs one with the same
SECRET_KEY so the billing endpoints can be exercised by hand.

Usage: python scripts/issue_token.py <subject_id> [email] [--minutes N]
"""
import argparse
from datetime import timedelta

from coursepay.core.config import settings
from coursepay.core.jwt import create_access_token


def main():
    parser = argparse.ArgumentParser(description="Issue a CoursePay subject token")
    parser.add_argument("subject_id")
    parser.add_argument("email", nargs="?")
    parser.add_argument("--minutes", type=int, default=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    args = parser.parse_args()

    settings.require("SECRET_KEY")
    token = create_access_token(
        settings,
        args.subject_id,
        email=args.email,
        expires_delta=timedelta(minutes=args.minutes),
    )
    print(token)


if __name__ == "__main__":
    main()
