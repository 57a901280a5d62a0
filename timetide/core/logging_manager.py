"""
Logging Manager for the TimeTide scheduling core
Console/file logging with redaction of OAuth tokens and webhook secrets
"""

import json
import logging
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional


class SecuritySafeFormatter(logging.Formatter):
    """Formatter that sanitizes sensitive information"""

    sensitive_fields = (
        'access_token', 'refresh_token', 'client_secret', 'authorization',
        'password', 'secret', 'token', 'code'
    )

    def format(self, record):
        """Format log record with sensitive data sanitization"""
        if record.args:
            if isinstance(record.args, dict):
                record.args = self._sanitize_value(record.args)
            else:
                record.args = tuple(self._sanitize_value(arg) for arg in record.args)

        record.msg = self._sanitize_message(str(record.msg))
        return super().format(record)

    def _sanitize_message(self, message: str) -> str:
        """Replace field=value and field: value pairs for sensitive fields"""
        lowered = message.lower()
        for field in self.sensitive_fields:
            if field in lowered:
                pattern = rf'({field})(["\']?\s*[:=]\s*["\']?)([^"\'\s,}}]+)'
                message = re.sub(pattern, r'\1\2***', message, flags=re.IGNORECASE)
        return message

    def _sanitize_value(self, value: Any) -> Any:
        """Sanitize sensitive values"""
        if isinstance(value, str):
            return self._sanitize_message(value)
        elif isinstance(value, dict):
            return {
                k: '***' if any(sens in str(k).lower() for sens in self.sensitive_fields) else v
                for k, v in value.items()
            }
        return value


class JSONFormatter(SecuritySafeFormatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        super().format(record)
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            log_data['stack_trace'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class LoggingManager:
    """Configures root logging once per process"""

    def __init__(self):
        self.configured = False
        self.handlers = []

    def configure(self, config: Optional[Dict[str, Any]] = None):
        """Configure logging from the 'logging' config section"""
        if self.configured:
            return

        config = config or {}
        level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        if config.get('json'):
            formatter = JSONFormatter()
        else:
            formatter = SecuritySafeFormatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)
        self.handlers.append(console_handler)

        file_path = config.get('file_path')
        if file_path:
            Path(file_path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                filename=file_path,
                maxBytes=int(config.get('file_max_size', 10 * 1024 * 1024)),
                backupCount=int(config.get('file_backup_count', 5)),
                encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(JSONFormatter())
            root_logger.addHandler(file_handler)
            self.handlers.append(file_handler)

        # httpx logs every request URL at INFO, which includes provider query strings
        logging.getLogger('httpx').setLevel(max(level, logging.WARNING))

        self.configured = True
        logging.getLogger(__name__).debug("Logging system configured")

    def shutdown(self):
        """Detach and close handlers installed by configure()"""
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            try:
                handler.close()
            except OSError as e:
                print(f"Error closing log handler: {e}", file=sys.stderr)

        self.handlers.clear()
        self.configured = False


logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]] = None):
    """Configure process logging from the 'logging' config section"""
    logging_manager.configure(config)
