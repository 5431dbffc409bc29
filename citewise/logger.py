import logging
import sys
from typing import Optional

from .config import ConfigError, load_app_config

NOISY_LOGGERS = ("httpx", "httpcore", "trafilatura", "sentence_transformers", "openai._base_client")


def setup_logging(level_override: Optional[str] = None) -> None:
    try:
        config = load_app_config()
    except ConfigError:
        config = {}
    level_name = (level_override or config.get("log_level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stdout,
    )
    noisy_level = getattr(logging, str(config.get("noisy_log_level", "WARNING")).upper(), logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)
