from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys

from sqlalchemy import select

from opsgate.core.config import get_settings
from opsgate.domain.models import IdentityUser, UserRole, new_id
from opsgate.persistence.db import build_engine, build_sessionmaker
from opsgate.services.identity import KNOWN_ROLES, issue_access_token


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid granting the wrong tier.
    parser = argparse.ArgumentParser(description="Issue an access token for an operator")
    parser.add_argument("--email", required=True, help="Operator email; the user is created if missing")
    parser.add_argument("--role", required=True, choices=KNOWN_ROLES, help="Platform role to ensure")
    parser.add_argument("--ttl-hours", type=int, default=None, help="Optional token lifetime in hours")
    return parser


async def _issue(args: argparse.Namespace) -> int:
    engine = build_engine(get_settings())
    sessionmaker = build_sessionmaker(engine)
    try:
        async with sessionmaker() as session:
            user = (
                await session.execute(select(IdentityUser).where(IdentityUser.email == args.email))
            ).scalar_one_or_none()
            if user is None:
                user = IdentityUser(id=new_id(), email=args.email, user_metadata={}, app_metadata={})
                session.add(user)
                # Flush the user row before inserting roles and tokens.
                await session.flush()
            roles = set(
                (await session.execute(select(UserRole.role).where(UserRole.user_id == user.id))).scalars().all()
            )
            if args.role not in roles:
                session.add(UserRole(id=new_id(), user_id=user.id, role=args.role))
            await session.commit()

            ttl = timedelta(hours=args.ttl_hours) if args.ttl_hours else None
            raw_token = await issue_access_token(session, user_id=user.id, ttl=ttl)
    finally:
        await engine.dispose()

    print("Access token issued:")
    print(f"  user_id: {user.id}")
    print(f"  role: {args.role}")
    print("  token: ")
    print(f"    {raw_token}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_issue(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_access_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
