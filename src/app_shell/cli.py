import argparse
import logging
import sys
from pathlib import Path

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteRateLimitStore
from src.api.deps import Settings
from src.app_shell.config import find_config_problems
from src.rules.loader import load_rules
from src.rules.models import Rules

logger = logging.getLogger("cli")


def _load(settings: Settings) -> Rules:
    if not Path(settings.rules_path).exists():
        logger.error("Rules file %s not found.", settings.rules_path)
        sys.exit(1)
    try:
        return load_rules(settings.rules_path)
    except ValueError as e:
        logger.error("Rules file %s is invalid: %s", settings.rules_path, e)
        sys.exit(1)


def handle_init_db(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    migrator = SQLiteMigrator(settings.db_path, str(settings.migrations_dir))
    applied = migrator.run_migrations()
    if applied:
        print(f"Applied {len(applied)} migration(s) to {settings.db_path}.")
    else:
        print(f"{settings.db_path} is up to date.")


def handle_check_config(settings: Settings) -> None:
    rules = _load(settings)
    problems = find_config_problems(rules, settings.data_dir, settings.environment)
    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)
    print(f"Configuration OK ({settings.environment}, rules {rules.project.rules_version}).")


def handle_purge_rate_limits(settings: Settings) -> None:
    rules = _load(settings)
    store = SQLiteRateLimitStore(settings.db_path)
    removed = store.purge_expired(rules.rate_limits.track.window_seconds)
    print(f"Removed {removed} expired rate limit entries.")


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Zero Trust Analytics CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Apply pending SQL migrations")
    subparsers.add_parser("check-config", help="Validate rules and environment")
    subparsers.add_parser("purge-rate-limits", help="Delete expired rate limit hits")

    args = parser.parse_args(argv)
    settings = Settings()

    if args.command == "init-db":
        handle_init_db(settings)
    elif args.command == "check-config":
        handle_check_config(settings)
    elif args.command == "purge-rate-limits":
        handle_purge_rate_limits(settings)


if __name__ == "__main__":
    main()
