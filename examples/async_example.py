"""
Credpool (async) example.

Use this pattern in notebooks, FastAPI/Starlette handlers or any asyncio app.
The blocking methods wrap `asyncio.run(...)`, so inside a running loop use the
`a*` variants instead.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from Credpool import AccountFilter, AccountStatus, Credpool


async def main() -> None:
    root = Path(__file__).resolve().parents[1]

    pool = Credpool.from_sources(
        verifier_url="http://127.0.0.1:8899",
        batch_import_concurrency=4,
        db_path=str(root / "credpool_state.db"),
    )

    report = await pool.aimport_text(
        "csv",
        "email,nickname,idp,refreshToken,clientId,clientSecret,region\n"
        'dev@example.com,"Dev, Team",Google,aorA...,,,us-east-1\n',
    )
    print(report.summary())

    added = await pool.aadd_account({"refreshToken": "aorB...", "provider": "BuilderId"})
    print("manual add:", added.summary())

    # Re-check only the accounts currently in error.
    pool.store.set_filter(AccountFilter(statuses={AccountStatus.ERROR}))
    pool.store.select_all()
    retry_ids = sorted(pool.store.selected_ids)
    if retry_ids:
        print("check:", (await pool.abatch_check_status(retry_ids)).model_dump())
    pool.store.set_filter(None)
    pool.store.deselect_all()

    print("stats:", pool.get_stats().model_dump())
    pool.close()


if __name__ == "__main__":
    asyncio.run(main())
