"""
強化ログシステム - 構造化ログと操作メトリクス
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import structlog


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """操作メトリクス収集"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.histograms = defaultdict(list)

    def record_success(self, operation: str, duration: float):
        """成功メトリクス記録"""
        self.counters[f"{operation}_success"] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """エラーメトリクス記録"""
        self.counters[f"{operation}_error_{error_type}"] += 1


class EnhancedLogger:
    """強化ログシステム"""

    def __init__(self,
                 name: str = "spackl_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True,
                 json_output: bool = False):

        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics_enabled = metrics_enabled
        self.json_output = json_output

        self.metrics = MetricsCollector() if metrics_enabled else None

        self._setup_structured_logging()
        self._setup_standard_logging()

    def _setup_structured_logging(self):
        """構造化ログの設定"""
        def add_timestamp(logger, method_name, event_dict):
            event_dict['timestamp'] = datetime.now().isoformat()
            event_dict['logger'] = self.name
            return event_dict

        def json_formatter(logger, method_name, event_dict):
            return json.dumps(event_dict, ensure_ascii=False, default=str)

        structlog.configure(
            processors=[
                add_timestamp,
                structlog.processors.add_log_level,
                json_formatter,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
            logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=True,
        )

        self.structured_logger = structlog.get_logger(self.name)

    def _setup_standard_logging(self):
        """標準ログの設定（ライブラリ側の logging.getLogger(__name__) もここに流れる）"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        # 再初期化時にハンドラーが重複しないようにする
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """エラーログ"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level in (LogLevel.ERROR, LogLevel.CRITICAL):
            self.metrics.record_error(
                kwargs.get('operation', 'unknown'),
                kwargs.get('error_type', 'unknown')
            )

        # 構造化ログ（JSON出力が有効な場合のみ）
        if self.json_output:
            getattr(self.structured_logger, level.value.lower())(message, **kwargs)

        log_method = getattr(self.logger, level.value.lower())
        if kwargs:
            message_with_context = f"{message} | Context: {json.dumps(kwargs, default=str)}"
        else:
            message_with_context = message
        log_method(message_with_context)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.info(
            f"Operation started: {operation}",
            operation=operation,
            start_time=start_time.isoformat(),
            status='started',
            **context
        )
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ"""
        end_time = datetime.now()
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')

        duration = (end_time - start_time).total_seconds() if start_time else 0.0

        result_context = {
            **{k: v for k, v in operation_context.items() if k != 'start_time'},
            'end_time': end_time.isoformat(),
            'duration_seconds': duration,
            'status': 'success' if success else 'failed',
            **additional_context
        }

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)", **result_context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)", **result_context)

# グローバルインスタンス
_global_logger: Optional[EnhancedLogger] = None


def get_logger(name: str = "spackl_sync",
               log_level: LogLevel = LogLevel.INFO,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """グローバルロガー取得"""
    global _global_logger

    if _global_logger is None:
        _global_logger = EnhancedLogger(name, log_level, log_file)

    return _global_logger


def setup_logging(config: Optional[Dict[str, Any]] = None) -> EnhancedLogger:
    """ログ設定の初期化"""
    config = config or {}

    log_level = LogLevel(str(config.get('level', 'INFO')).upper())
    log_file_path = config.get('file_path')
    log_file = Path(log_file_path) if log_file_path else None

    global _global_logger
    _global_logger = EnhancedLogger(
        name=config.get('name', 'spackl_sync'),
        log_level=log_level,
        log_file=log_file,
        metrics_enabled=config.get('metrics_enabled', True),
        json_output=config.get('json_output', False)
    )

    return _global_logger
