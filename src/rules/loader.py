import logging
import math
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import ValidationError

from src.components.analytics import parse_enabled_events
from src.rules.models import AnalyticsRules, Rules

logger = logging.getLogger(__name__)


def load_rules(path: Path) -> Rules:
    """
    Load and validate the rules file.
    Raises FileNotFoundError if file missing.
    Raises ValueError if YAML or schema invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found at: {path}")

    with open(path) as f:
        content = f.read()

    # Rules may be kept inside a ```yaml fence in a markdown file
    lines = content.splitlines()
    yaml_lines = []
    in_block = False
    found_block = False

    for line in lines:
        s_line = line.strip()
        if s_line.startswith("```yaml"):
            in_block = True
            found_block = True
            continue
        if in_block and s_line.startswith("```"):
            break
        if in_block:
            yaml_lines.append(line)

    clean_content = "\n".join(yaml_lines) if found_block else content

    try:
        data = yaml.safe_load(clean_content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in rules file: {e}") from e

    try:
        return Rules.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Rules validation failed:\n{e}") from e


# --- Environment overrides ---


def env_number(
    raw: str | None,
    fallback: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """Parse a numeric env value and clamp it; junk yields the fallback."""
    if raw is None or not raw.strip():
        return fallback
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric analytics setting %r", raw)
        return fallback
    if not math.isfinite(parsed):
        return fallback
    if minimum is not None and parsed < minimum:
        return minimum
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def parse_origins(raw: str | None) -> list[str]:
    """Comma-separated origin list, blanks dropped."""
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def apply_env_overrides(
    rules: AnalyticsRules,
    env: Mapping[str, str] | None = None,
) -> AnalyticsRules:
    """
    Overlay ANALYTICS_* environment variables on the analytics rules.

    Values are clamped to safe ranges instead of rejected.
    """
    env = os.environ if env is None else env
    ingest = rules.ingest
    rate = rules.rate_limit

    ingest_updates: dict[str, object] = {}
    if env.get("ANALYTICS_ENABLED_EVENTS"):
        ingest_updates["enabled_events"] = sorted(
            parse_enabled_events(env["ANALYTICS_ENABLED_EVENTS"])
        )
    if env.get("ANALYTICS_ALLOWED_ORIGINS") is not None:
        ingest_updates["allowed_origins"] = parse_origins(env["ANALYTICS_ALLOWED_ORIGINS"])
    ingest_updates["max_events_per_request"] = int(
        env_number(env.get("ANALYTICS_MAX_EVENTS_PER_REQUEST"), ingest.max_events_per_request, 1, 100)
    )
    ingest_updates["max_event_bytes"] = int(
        env_number(env.get("ANALYTICS_MAX_EVENT_BYTES"), ingest.max_event_bytes, 512, 16384)
    )
    ingest_updates["read_progress_sample_rate"] = env_number(
        env.get("ANALYTICS_PROGRESS_SAMPLE_RATE"), ingest.read_progress_sample_rate, 0, 1
    )

    rate_updates = {
        "window_seconds": int(
            env_number(env.get("ANALYTICS_RATE_LIMIT_WINDOW_SECONDS"), rate.window_seconds, 10, 3600)
        ),
        "max_events": int(
            env_number(env.get("ANALYTICS_RATE_LIMIT_MAX_EVENTS"), rate.max_events, 1, 10000)
        ),
    }

    return rules.model_copy(
        update={
            "ingest": ingest.model_copy(update=ingest_updates),
            "rate_limit": rate.model_copy(update=rate_updates),
        }
    )


def load_analytics_rules(
    path: Path | None,
    env: Mapping[str, str] | None = None,
) -> AnalyticsRules:
    """Analytics rules from the rules file (or defaults) with env overrides."""
    base = load_rules(path).analytics if path is not None else AnalyticsRules()
    return apply_env_overrides(base, env)
