import logging
from datetime import datetime
from pathlib import Path


def setup_logging(log_dir: Path, log_level: str = "INFO", console: bool = True) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{datetime.now():%Y-%m-%d}.log"

    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    # urllib3 connection chatter drowns the portal exchange at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return log_path
