import logging
import os
import sys
from pathlib import Path

from src.rules.models import Rules

logger = logging.getLogger(__name__)

PRODUCTION = "production"


def find_config_problems(rules: Rules, data_dir: Path, environment: str) -> list[str]:
    """Operational problems that should stop the service from starting."""
    ops = rules.ops
    problems: list[str] = []

    # 1. Data dir must be usable for the SQLite file
    if ops.data_dir_required:
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            problems.append(f"Data directory {data_dir} cannot be created: {e}")
        else:
            if not os.access(data_dir, os.W_OK):
                problems.append(f"Data directory {data_dir} is not writable")

    # 2. Required env, with extra requirements in production
    required = list(ops.required_env)
    if environment == PRODUCTION:
        required.extend(ops.required_env_in_production)

    missing = [name for name in required if not os.environ.get(name)]
    if missing:
        problems.append(f"Missing required environment variables: {', '.join(missing)}")

    return problems


def validate_ops_rules(rules: Rules, data_dir: Path, environment: str = "development") -> None:
    """
    Validate operational requirements before startup.

    Exits the process when anything is wrong.
    """
    problems = find_config_problems(rules, data_dir, environment)
    if problems:
        for problem in problems:
            logger.critical(problem)
        sys.exit(1)

    logger.info("Configuration validated (%s).", environment)
