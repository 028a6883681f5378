#!/usr/bin/env python3
"""Create or promote an administrator in the persisted credential store.

    ADMIN_USERNAME=ops ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='Str0ng-Passphrase' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username ops --email ops@example.com \
        --password 'Str0ng-Passphrase' [--dry-run]

State lives under SHARED_FS_ROOT/state/trustgate_store.json. JWT_SECRET must match the
running service; it also keys MFA secret encryption unless MFA_SECRET_KEY is set.
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

MIN_ADMIN_PASSWORD = 12
_CHARACTER_CLASSES = {
    "uppercase": str.isupper,
    "lowercase": str.islower,
    "digit": str.isdigit,
    "symbol": lambda ch: not ch.isalnum() and not ch.isspace(),
}

_OUTCOMES = {
    "created": "Created administrator {username} ({user_id})",
    "promoted": "Promoted {username} ({user_id}) to administrator",
    "already_admin": "{username} ({user_id}) is already an administrator; nothing to do",
    "dry_run": "[dry run] would {action} {username}",
}


def password_problems(password: str) -> List[str]:
    """Return the reasons an admin password is too weak; empty when acceptable."""
    problems = []
    if len(password) < MIN_ADMIN_PASSWORD:
        problems.append(f"shorter than {MIN_ADMIN_PASSWORD} characters")
    present = [name for name, test in _CHARACTER_CLASSES.items() if any(test(ch) for ch in password)]
    if len(present) < 3:
        missing = ", ".join(name for name in _CHARACTER_CLASSES if name not in present)
        problems.append(f"uses fewer than 3 character classes (missing: {missing})")
    return problems


def bootstrap_admin(username: str, email: str, password: str, dry_run: bool = False) -> dict:
    # Settings load on first runtime access, so the caller sets the environment first
    from trustgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_username(username)
    result = {"username": username, "user_id": existing.id if existing else None}

    if existing is not None and existing.is_admin:
        result["status"] = "already_admin"
    elif dry_run:
        result["status"] = "dry_run"
        result["action"] = "promote" if existing else "create"
    else:
        principal = runtime.auth.bootstrap_admin(username, email, password)
        result["user_id"] = principal.id
        result["status"] = "promoted" if existing else "created"
    return result


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create or promote a trustgate administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    for name in ("username", "email", "password"):
        env_name = f"ADMIN_{name.upper()}"
        parser.add_argument(f"--{name}", default=os.environ.get(env_name), help=f"defaults to ${env_name}")
    parser.add_argument("--dry-run", action="store_true", help="report the change without writing it")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    missing = [name for name in ("username", "email", "password") if not getattr(args, name)]
    if missing:
        print(f"error: missing {', '.join(missing)} (flag or ADMIN_* variable)", file=sys.stderr)
        return 2

    problems = password_problems(args.password)
    if problems:
        print("error: password " + "; ".join(problems), file=sys.stderr)
        return 2

    if not os.environ.get("JWT_SECRET"):
        print("note: JWT_SECRET unset; the secret persisted under SHARED_FS_ROOT is used", file=sys.stderr)

    os.environ["PERSIST_STATE"] = "true"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.username, args.email, args.password, dry_run=args.dry_run)
    except Exception as exc:  # surfaced to the operator as a failed run
        print(f"error: {exc}", file=sys.stderr)
        return 1

    print(_OUTCOMES[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
