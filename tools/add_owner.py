#! /usr/bin/env python

import argparse
from vpnpool.common import settings
from vpnpool.common.db.connection import make_session
from vpnpool.common.db.models import Owner


if __name__ == "__main__":
    args = argparse.ArgumentParser()
    args.add_argument("--name", type=str, required=True)
    args.add_argument("--email", type=str, required=False)
    args.add_argument(
        "--quota",
        type=int,
        default=settings.DEFAULT_OWNER_QUOTA,
        help="Maximum concurrent sessions for this owner",
    )
    args.add_argument(
        "--allow-cidr",
        action="append",
        dest="cidrs",
        help="Source CIDR allowed to request sessions (repeatable, default: any)",
    )
    args = args.parse_args()

    if not 1 <= args.quota <= settings.MAX_CONCURRENT_SESSIONS:
        raise ValueError(
            f"Quota must be between 1 and {settings.MAX_CONCURRENT_SESSIONS}"
        )

    owner, api_key = Owner.create_with_api_key(
        name=args.name,
        email=args.email,
        max_concurrent_sessions=args.quota,
        allowed_source_cidrs=args.cidrs,
    )
    with make_session() as session:
        session.add(owner)

    print(f"Owner {args.name} created with id {owner.id}")
    print(f"API key (shown once): {api_key}")
