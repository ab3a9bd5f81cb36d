import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from src.rules.models import Rules

logger = logging.getLogger(__name__)

PRODUCTION = "production"


def validate_ops_rules(
    rules: Rules,
    data_dir: Path,
    environment: str,
    env: Mapping[str, str] | None = None,
) -> None:
    """
    Validate operational requirements before startup.

    Exits the process when a requirement is not met.
    """
    env = os.environ if env is None else env
    ops = rules.ops

    # 1. Data dir must exist (or be creatable) and be writable
    if ops.data_dir_required:
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.critical("Data directory %s is not usable: %s", data_dir, e)
            sys.exit(1)
        if not os.access(data_dir, os.W_OK):
            logger.critical("Data directory %s is not writable", data_dir)
            sys.exit(1)

    # 2. Required env, plus production-only requirements
    required = list(ops.required_env)
    if environment == PRODUCTION:
        required.extend(ops.required_env_in_production)

    missing = [name for name in required if not env.get(name)]
    if missing:
        logger.critical("Missing required environment variables: %s", ", ".join(missing))
        sys.exit(1)

    logger.info("Configuration validated (environment: %s)", environment)
