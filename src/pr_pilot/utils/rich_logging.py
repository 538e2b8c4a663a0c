"""Worker logging with task/phase context and readable console formatting."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class AgentLogFormatter(logging.Formatter):
    """Formatter that renders the worker id plus any task/phase context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }

    def __init__(self, worker_id: str, use_colors: bool = True):
        super().__init__()
        self.worker_id = worker_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        task_context = ""
        if hasattr(record, "task_id"):
            task_id = str(record.task_id)
            task_context = f"[{task_id[:8]}...] " if len(task_id) > 8 else f"[{task_id}] "

        phase_context = ""
        if hasattr(record, "phase"):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        line = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.worker_id}] {phase_context}{task_context}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds task context to all log messages."""

    PHASE_EMOJI = {
        "claiming": "🔍",
        "planning": "📝",
        "implementing": "⚙️",
        "escalating": "⚠️",
        "committing": "💾",
        "creating_pr": "🔀",
        "previewing": "🌐",
        "shipping": "🚀",
        "recovering": "🔄",
        "assisting": "💬",
    }

    def __init__(self, logger: logging.Logger, worker_id: str):
        super().__init__(logger, {})
        self.worker_id = worker_id
        self.current_task_id: Optional[str] = None
        self.current_phase: Optional[str] = None

    def set_task_context(
        self,
        task_id: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        """Set current task context for logging."""
        if task_id:
            self.current_task_id = task_id
        if phase is not None:
            self.current_phase = phase

    def clear_context(self):
        self.current_task_id = None
        self.current_phase = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})

        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        if self.current_phase:
            extra["phase"] = self.current_phase

        kwargs["extra"] = extra
        return msg, kwargs

    def task_started(self, task_id: str, title: str):
        self.set_task_context(task_id=task_id)
        self.info(f"📋 Starting task: {title}")

    def phase_change(self, phase: str):
        self.set_task_context(phase=phase)
        emoji = self.PHASE_EMOJI.get(phase.lower(), "▶️")
        self.info(f"{emoji} Phase: {phase}")

    def task_completed(self, duration_seconds: float, cost_usd: Optional[float] = None):
        msg = f"✅ Task completed in {duration_seconds:.1f}s"
        if cost_usd:
            msg += f" (${cost_usd:.4f})"
        self.info(msg)
        self.clear_context()

    def task_failed(self, error: str):
        self.error(f"❌ Task failed: {error}")
        self.clear_context()

    def token_usage(self, input_tokens: int, output_tokens: int, cost: float):
        total = input_tokens + output_tokens
        self.info(
            f"💰 Tokens: {input_tokens:,} in + {output_tokens:,} out = {total:,} total "
            f"(~${cost:.4f})"
        )

    def progress(self, message: str):
        self.info(f"⏳ {message}")


def setup_rich_logging(
    worker_id: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
) -> ContextLogger:
    """
    Setup worker logging.

    Args:
        worker_id: Worker identifier (appears on every line)
        workspace: Directory whose logs/ subdirectory receives the log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to logs/<worker_id>.log

    Returns:
        ContextLogger instance
    """
    # PID keeps two workers on one host from sharing handlers
    unique_logger_name = f"{worker_id}-{os.getpid()}"
    logger = logging.getLogger(unique_logger_name)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.propagate = False

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    use_colors = sys.stdout.isatty() if hasattr(sys.stdout, "isatty") else False
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(AgentLogFormatter(worker_id, use_colors=use_colors))
    logger.addHandler(console_handler)

    if use_file:
        log_dir = Path(workspace) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_dir / f"{worker_id}.log")
        file_handler.setFormatter(AgentLogFormatter(worker_id, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logger, worker_id)
