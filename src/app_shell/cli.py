import argparse
import logging
import sys
from datetime import date

from src.adapters.clock import SystemClock
from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteAnalyticsStore
from src.api.deps import Settings
from src.components.analytics import (
    RefreshRollupsInput,
    clamp_lookback_days,
    lookback_input,
    run_refresh,
)
from src.rules.loader import load_analytics_rules

logger = logging.getLogger("cli")


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}; expected YYYY-MM-DD") from e


def handle_migrate(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    applied = SQLiteMigrator(settings.db_path, str(settings.migrations_dir)).run_migrations()
    print(f"Applied {len(applied)} migrations.")


def handle_refresh(settings: Settings, args: argparse.Namespace) -> None:
    rules = load_analytics_rules(settings.rules_path if settings.rules_path.exists() else None)
    clock = SystemClock()

    if args.from_date or args.to_date:
        to_date = args.to_date or clock.today_utc()
        from_date = args.from_date or to_date
        inp = RefreshRollupsInput(from_date=from_date, to_date=to_date)
    else:
        inp = lookback_input(clock.today_utc(), clamp_lookback_days(args.days))

    handle_migrate(settings)
    store = SQLiteAnalyticsStore(settings.db_path)

    try:
        result = run_refresh(inp, store=store, time_port=clock, retention_days=rules.retention.days)
    except ValueError as e:
        logger.error("Refresh failed: %s", e)
        sys.exit(2)

    print(
        f"Refreshed {len(result.days)} days "
        f"({inp.from_date.isoformat()}..{inp.to_date.isoformat()}); "
        f"purged {result.purged_events} events, {result.purged_read_states} read states."
    )


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Blog analytics CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate
    subparsers.add_parser("migrate", help="Apply pending database migrations")

    # refresh-rollups
    refresh_parser = subparsers.add_parser("refresh-rollups", help="Recompute daily rollups")
    refresh_parser.add_argument("--from", dest="from_date", type=_parse_day, help="First day")
    refresh_parser.add_argument("--to", dest="to_date", type=_parse_day, help="Last day")
    refresh_parser.add_argument(
        "--days", type=int, default=3, help="Days before today when no range is given"
    )

    args = parser.parse_args(argv)
    settings = Settings()

    if args.command == "migrate":
        handle_migrate(settings)
    elif args.command == "refresh-rollups":
        handle_refresh(settings, args)


if __name__ == "__main__":
    main()
