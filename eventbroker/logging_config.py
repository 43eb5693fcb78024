"""Root logger setup for processes embedding the broker."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _file_handler(project_root: Path, cfg: dict[str, Any], level: int) -> logging.Handler:
    log_path = project_root / cfg.get("file", "logs/eventbroker.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    h = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    h.setLevel(level)
    return h


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Configure the root logger from settings["logging"].

    Always logs to a rotating file under project_root; console output only
    when log_to_console is set. Existing root handlers are replaced.
    """
    cfg = settings.get("logging", {})
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    handlers = [_file_handler(project_root, cfg, level)]
    if cfg.get("log_to_console", False):
        console = logging.StreamHandler()
        console.setLevel(level)
        handlers.append(console)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
