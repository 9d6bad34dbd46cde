"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for allocation, charge and replay operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

from .config import get_config


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""
    
    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
            "loan_id": getattr(record, 'loan_id', None),
            "transaction_id": getattr(record, 'transaction_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }
        
        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}
        
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)
            
        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None, logger_name: str = "loan_ledger",
                  log_format: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the engine.
    
    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); defaults to config
        logger_name: Name of the logger
        log_format: "json" or "text"; defaults to config
        log_file: File to append to instead of stdout; defaults to config
        
    Returns:
        Configured logger instance
    """
    settings = get_config()
    level = level or settings.log_level
    log_format = log_format or settings.log_format
    log_file = log_file or settings.log_file
    
    logger = logging.getLogger(logger_name)
    
    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    
    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    
    # Prevent propagation to avoid duplicate logs
    logger.propagate = False
    
    return logger


def get_logger(name: str = "loan_ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               loan_id: Optional[str] = None, transaction_id: Optional[str] = None,
               action: Optional[str] = None, resource: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.
    
    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        loan_id: Loan the action applies to
        transaction_id: Transaction the action applies to
        action: Action being performed
        resource: Resource being acted upon
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return
    
    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )
    
    if loan_id:
        record.loan_id = loan_id
    if transaction_id:
        record.transaction_id = transaction_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if extra:
        record.extra = extra
        
    logger.handle(record)
