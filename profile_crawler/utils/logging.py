"""
Logging configuration and utilities.

Every component logs through the standard library; structlog is configured on
top of it so that structured callers render JSON records. Business loggers
write their own daily-rotated files under ``logs/`` and old files are pruned by
a background ``schedule`` job.
"""

import logging
import logging.handlers
import sys
import time
import threading
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime, timedelta

import schedule
import structlog


PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_LOGS_DIR = PROJECT_ROOT / "logs"

BUSINESS_LOGS = {
    "orchestrator": "logs/orchestrator.log",
    "runner": "logs/runner.log",
    "rate_limiter": "logs/rate_limiter.log",
    "concurrency": "logs/concurrency.log",
    "worker_pool": "logs/worker_pool.log",
    "auth": "logs/auth.log",
    "checkpoint": "logs/checkpoint.log",
    "repository": "logs/repository.log",
    "browser": "logs/browser.log",
    "events": "logs/events.log",
}

_cleanup_lock = threading.Lock()
_cleanup_started = False


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Set up structured logging for the application.
    
    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path, rotated at midnight
        retention_days: Number of days to retain log files
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)
    
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8'
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        
        _start_log_cleanup_scheduler(log_path.parent, retention_days)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.
    
    Args:
        name: Logger name (typically __name__)
        
    Returns:
        Standard library logger
    """
    return logging.getLogger(name)


def get_structured_logger(name: str):
    """Get a structlog logger bound to ``name``."""
    return structlog.get_logger(name)


def get_business_logger(business_name: str, log_level: str = "INFO",
                        logs_dir: Optional[Path] = None) -> logging.Logger:
    """
    Get a logger that writes to the business log file for ``business_name``.
    
    Args:
        business_name: Business name such as 'orchestrator' or 'checkpoint'
        log_level: Logging level for the file handler
        logs_dir: Override for the logs directory
        
    Returns:
        Configured logger; repeated calls return the same instance
    """
    logger = logging.getLogger(f"business.{business_name}")
    
    if logger.handlers:
        return logger
    
    logger.setLevel(getattr(logging, log_level.upper()))
    
    if logs_dir is not None:
        log_path = Path(logs_dir) / f"{business_name}.log"
    else:
        log_path = PROJECT_ROOT / BUSINESS_LOGS.get(business_name, f"logs/{business_name}.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    
    file_handler = logging.handlers.TimedRotatingFileHandler(
        log_path,
        when='midnight',
        interval=1,
        backupCount=7,
        encoding='utf-8',
        delay=True
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))
    logger.addHandler(file_handler)
    
    # Errors also go to the console
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(console_handler)
    
    return logger


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> None:
    """Register the daily cleanup job and start the scheduler thread once."""
    global _cleanup_started
    
    with _cleanup_lock:
        if _cleanup_started:
            return
        _cleanup_started = True
    
    logger = get_logger(__name__)
    
    def cleanup_job():
        try:
            cleanup_old_logs(logs_dir, retention_days)
        except OSError as e:
            logger.warning(f"Log cleanup failed: {e}")
    
    schedule.every().day.at("02:00").do(cleanup_job)
    
    def run_scheduler():
        while True:
            schedule.run_pending()
            time.sleep(60)
    
    scheduler_thread = threading.Thread(
        target=run_scheduler, name="LogCleanupScheduler", daemon=True
    )
    scheduler_thread.start()


def cleanup_old_logs(logs_dir: Optional[Path] = None, retention_days: int = 7) -> int:
    """
    Delete log files older than the retention window.
    
    Args:
        logs_dir: Logs directory, defaults to ``<project>/logs``
        retention_days: Number of days to keep
        
    Returns:
        Number of files removed
    """
    logs_dir = Path(logs_dir) if logs_dir is not None else DEFAULT_LOGS_DIR
    
    if not logs_dir.exists():
        return 0
    
    logger = get_logger(__name__)
    cleaned_count = 0
    cutoff_date = datetime.now() - timedelta(days=retention_days)
    
    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
        if file_mtime < cutoff_date:
            log_file.unlink()
            cleaned_count += 1
            logger.info(f"Removed expired log file: {log_file.name}")
    
    if cleaned_count > 0:
        logger.info(f"Log cleanup finished, removed {cleaned_count} files")
    
    return cleaned_count


def get_log_statistics(logs_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Summarize the files in the logs directory."""
    logs_dir = Path(logs_dir) if logs_dir is not None else DEFAULT_LOGS_DIR
    
    stats = {
        "total_files": 0,
        "total_size_mb": 0.0,
        "files_by_business": {},
    }
    
    if not logs_dir.exists():
        return stats
    
    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        size_mb = log_file.stat().st_size / 1024 / 1024
        stats["total_files"] += 1
        stats["total_size_mb"] += size_mb
        
        business = stats["files_by_business"].setdefault(
            log_file.name.split('.')[0], {"count": 0, "size_mb": 0.0}
        )
        business["count"] += 1
        business["size_mb"] += size_mb
    
    stats["total_size_mb"] = round(stats["total_size_mb"], 2)
    return stats
