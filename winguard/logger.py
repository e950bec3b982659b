import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import _default_data_dir


def _with_fields(message: str, fields: dict) -> str:
    if not fields:
        return message
    details = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
    return f"{message} [{details}]"


class AgentLogger:
    """Centralized logging for the WinGuard agent"""

    def __init__(self, log_dir: Optional[str] = None):
        self.log_dir = log_dir or os.environ.get("WINGUARD_LOG_DIR") or os.path.join(_default_data_dir(), "logs")
        os.makedirs(self.log_dir, exist_ok=True)

        # Main agent logger
        self.agent_logger = logging.getLogger("winguard")
        self.agent_logger.setLevel(logging.INFO)

        # Ban / unban and offense trail
        self.security_logger = logging.getLogger("winguard.security")
        self.security_logger.setLevel(logging.INFO)

        if not getattr(self.agent_logger, "_winguard_configured", False):
            self._setup_handlers()
            self.agent_logger._winguard_configured = True

    def _setup_handlers(self):
        """Setup file handlers with rotation"""

        # Main log file (rotates at 10MB, keeps 5 files)
        main_handler = RotatingFileHandler(
            os.path.join(self.log_dir, "winguard.log"),
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        main_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
        )
        self.agent_logger.addHandler(main_handler)

        # Security events log (rotates at 5MB, keeps 10 files)
        security_handler = RotatingFileHandler(
            os.path.join(self.log_dir, "security.log"),
            maxBytes=5*1024*1024,  # 5MB
            backupCount=10,
            encoding="utf-8",
        )
        security_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - SECURITY - %(levelname)s - %(message)s'
            )
        )
        self.security_logger.addHandler(security_handler)

        # Console handler for important messages
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            )
        )
        self.agent_logger.addHandler(console_handler)

    def info(self, message: str, **kwargs):
        """Log info message"""
        self.agent_logger.info(_with_fields(message, kwargs))

    def warning(self, message: str, **kwargs):
        """Log warning message"""
        self.agent_logger.warning(_with_fields(message, kwargs))

    def error(self, message: str, **kwargs):
        """Log error message"""
        self.agent_logger.error(_with_fields(message, kwargs))

    def exception(self, message: str, **kwargs):
        """Log error message with the active traceback"""
        self.agent_logger.exception(_with_fields(message, kwargs))

    def security_event(self, event_type: str, ip: str, details: str, **kwargs):
        """Log security event"""
        message = _with_fields(f"{event_type} from {ip}: {details}", kwargs)
        self.security_logger.info(message)

    def ban_event(self, ip: str, reason: str, expires_at: str, **kwargs):
        """Log IP ban"""
        message = _with_fields(f"BANNED IP {ip} until {expires_at} UTC - Reason: {reason}", kwargs)
        self.security_logger.warning(message)

    def unban_event(self, ip: str, cause: str, **kwargs):
        """Log IP unban"""
        message = _with_fields(f"UNBANNED IP {ip} ({cause})", kwargs)
        self.security_logger.info(message)


# Global logger instance
logger = AgentLogger()
