from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from .client import Credpool
from .core.config import CredpoolConfig
from .core.exceptions import CredpoolError
from .core.logging_config import configure_logging, parse_component_levels
from .core.models import AccountFilter, AccountStatus

DEFAULT_DB_PATH = "credpool_state.db"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _account_row(account) -> dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "idp": account.idp.value,
        "status": account.status.value,
        "subscription": account.subscription.type.value,
        "usage": f"{account.usage.current:g}/{account.usage.limit:g}",
        "tags": list(account.tags),
        "lastError": account.last_error,
    }


def _resolve_ids(pool: Credpool, ids: list[str]) -> list[str]:
    return list(ids) if ids else pool.store.ids()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m Credpool",
        description="Import, verify and maintain a local pool of OAuth-style service accounts.",
    )
    parser.add_argument("--db-path", default=None, help=f"SQLite state file (default: {DEFAULT_DB_PATH})")
    parser.add_argument("--env-path", default=None, help="Path to a .env file with CREDPOOL_* values")
    parser.add_argument("--verifier-url", default=None, help="Base URL of the verification API")
    parser.add_argument("--concurrency", type=int, default=None, help="Verifications in flight per chunk")
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--log-profile", default="simple", choices=["simple", "detailed"])
    parser.add_argument(
        "--log-component",
        action="append",
        default=[],
        metavar="NAME=LEVEL",
        help="Per-component log level, e.g. importer=DEBUG (repeatable)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="Import accounts from a json/csv/txt file")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--format", dest="fmt", default=None, choices=["json", "csv", "txt"])

    oidc_cmd = commands.add_parser("import-oidc", help="Import an OIDC credential batch (file path or '-' for stdin)")
    oidc_cmd.add_argument("path")

    list_cmd = commands.add_parser("list", help="List stored accounts")
    list_cmd.add_argument("--search", default=None)
    list_cmd.add_argument("--status", action="append", default=[], choices=[status.value for status in AccountStatus])
    list_cmd.add_argument("--tag", action="append", default=[])

    commands.add_parser("stats", help="Show aggregate account statistics")

    for name, help_text in (
        ("refresh", "Refresh access tokens (all accounts when no id is given)"),
        ("check", "Re-verify accounts (all accounts when no id is given)"),
    ):
        cmd = commands.add_parser(name, help=help_text)
        cmd.add_argument("ids", nargs="*")

    export_cmd = commands.add_parser("export", help="Write a full export JSON file")
    export_cmd.add_argument("path")
    export_cmd.add_argument("ids", nargs="*")

    remove_cmd = commands.add_parser("remove", help="Remove accounts by id")
    remove_cmd.add_argument("ids", nargs="+")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        configure_logging(
            level=str(args.log_level).upper(),
            profile=args.log_profile,
            levels=parse_component_levels(args.log_component),
        )
        config = CredpoolConfig.from_sources(
            verifier_url=args.verifier_url,
            batch_import_concurrency=args.concurrency,
            db_path=args.db_path,
            env_path=args.env_path,
        )
        if not config.storage.db_path:
            config.storage.db_path = DEFAULT_DB_PATH
        return _run(Credpool(config), args)
    except CredpoolError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def _run(pool: Credpool, args: argparse.Namespace) -> int:
    try:
        if args.command == "import":
            report = pool.import_file(args.path, args.fmt)
            print(report.summary())
            return 0 if report.failed == 0 else 1

        if args.command == "import-oidc":
            raw = sys.stdin.buffer.read() if args.path == "-" else Path(args.path).read_bytes()
            report = pool.import_oidc(raw)
            print(report.summary())
            return 0 if report.failed == 0 else 1

        if args.command == "list":
            pool.store.set_filter(AccountFilter(search=args.search, statuses=set(args.status), tags=set(args.tag)))
            _print_json([_account_row(account) for account in pool.store.get_filtered()])
            return 0

        if args.command == "stats":
            _print_json(pool.get_stats().model_dump())
            return 0

        if args.command in {"refresh", "check"}:
            ids = _resolve_ids(pool, args.ids)
            if args.command == "refresh":
                batch = pool.batch_refresh_tokens(ids)
            else:
                batch = pool.batch_check_status(ids)
            _print_json(batch.model_dump())
            return 0 if batch.failed == 0 else 1

        if args.command == "export":
            count = pool.export_to_file(args.path, args.ids or None)
            print(f"Exported {count} account(s) to {args.path}")
            return 0

        if args.command == "remove":
            removed = pool.remove_accounts(args.ids)
            print(f"Removed {removed} account(s)")
            return 0
    finally:
        pool.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
