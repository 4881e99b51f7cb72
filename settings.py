# settings.py
import logging
from dataclasses import dataclass, fields

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Runtime settings; stored `config` keys override these defaults."""

    poll_interval: float = 3.0
    backoff_base: int = 30
    backoff_max: int = 3600
    max_attempts: int = 3
    clpctl_path: str = "clpctl"
    command_timeout: int = 600


def load_settings(storage, **overrides):
    values = {}
    for f in fields(Settings):
        raw = overrides.get(f.name)
        if raw is None:
            raw = storage.get_config(f.name)
        if raw is None:
            continue
        try:
            values[f.name] = f.type(raw) if f.type is not str else str(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid config value %s=%r; using default %r", f.name, raw, f.default)
    return Settings(**values)
