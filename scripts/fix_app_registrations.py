from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from m365assess.core.logging import configure_logging
from m365assess.persistence.db import SessionLocal, engine
from m365assess.services.maintenance import fix_app_registrations


async def _run(apply: bool) -> dict:
    # Audit stored app registrations and optionally rewrite unusable ones.
    async with SessionLocal() as session:
        audit = await fix_app_registrations(session, apply=apply)
    await engine.dispose()
    return asdict(audit)


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate and repair customer app registrations")
    parser.add_argument("--apply", action="store_true", help="persist fixes instead of reporting only")
    args = parser.parse_args()
    configure_logging()
    report = asyncio.run(_run(args.apply))
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
