from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

ROLES = ("job-seeker", "recruiter", "admin", "service")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a JWT for the ATS notification API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True, help="User id placed in the sub claim.")
    parser.add_argument("--roles", required=True, help=f"Comma-separated, any of: {', '.join(ROLES)}.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
