"""Logging setup shared by the CLI, the session layer and tests.

Every record carries the pipeline context active when it was emitted
(machine kind, router mode, job name, ...).  Context lives in a
``contextvars.ContextVar`` so a nested ``generate()`` call inherits the
fields of the request that triggered it, and is attached to records by
:class:`ContextFilter` rather than by the formatter, which lets any
handler (pytest's caplog included) see ``record.context``.

Public API:
    setup_logging(log_level="INFO", log_file=None, json=False, context={"app": "cli"})
    log_context(machine="router", mode="raster")   # context manager
    push_context(...) / pop_context([...])          # manual form
    set_level("DEBUG")
    install_excepthook()

Output:
    Human: 09:15:04.120 INFO     cnc_control.pipeline.session [machine=router mode=raster] Image loaded: 640x480
    JSON:  {"t": "2026-03-02T09:15:04.120000+00:00", "lvl": "INFO", "logger": "...", "msg": "...", "machine": "router"}

Idempotent: a second setup_logging() call replaces the handlers the first
one installed and leaves foreign handlers alone.
"""

import contextlib
import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


_context_var: contextvars.ContextVar = contextvars.ContextVar(
    'cncai_log_context', default={}
)

_installed: List[logging.Handler] = []

# Third-party loggers that are noisy at DEBUG
DEFAULT_QUIET_LIBS = ('PIL', 'shapely')

_ROTATION_DEFAULTS = {
    'size': {'max_bytes': 5_000_000, 'backup_count': 3},
    'time': {'when': 'midnight', 'interval': 1, 'backup_count': 7},
}


# ============================================================================
# CONTEXT
# ============================================================================

def get_context() -> Dict[str, Any]:
    """Return a copy of the fields attached to new records."""
    return dict(_context_var.get())


def push_context(**fields) -> None:
    """Merge ``fields`` into the current context."""
    _context_var.set({**_context_var.get(), **fields})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Drop ``keys`` from the context, or clear it when ``keys`` is None."""
    if keys is None:
        _context_var.set({})
        return
    remaining = {k: v for k, v in _context_var.get().items() if k not in keys}
    _context_var.set(remaining)


@contextlib.contextmanager
def log_context(**fields) -> Iterator[Dict[str, Any]]:
    """Attach ``fields`` to every record logged inside the block.

    The previous context is restored on exit, including fields the block
    overrode, even if the block raises.

    Examples
    --------
    >>> with log_context(machine="laser"):
    ...     logger.info("Detecting")  # [machine=laser] Detecting
    """
    token = _context_var.set({**_context_var.get(), **fields})
    try:
        yield get_context()
    finally:
        _context_var.reset(token)


class ContextFilter(logging.Filter):
    """Copy the active context onto ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = get_context()
        return True


# ============================================================================
# FORMATTERS
# ============================================================================

def _record_time(record: logging.LogRecord, utc: bool) -> datetime:
    if utc:
        return datetime.fromtimestamp(record.created, tz=timezone.utc)
    return datetime.fromtimestamp(record.created).astimezone()


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    # Records created before ContextFilter ran (or by foreign handlers)
    context = getattr(record, 'context', None)
    return context if context is not None else get_context()


class HumanFormatter(logging.Formatter):
    """One line per record: time, level, logger, [context], message."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[1;31m',
    }
    RESET = '\033[0m'

    def __init__(self, color: bool = False, utc: bool = True):
        super().__init__()
        self.color = color
        self.utc = utc

    def format(self, record: logging.LogRecord) -> str:
        ts = _record_time(record, self.utc).strftime('%H:%M:%S.%f')[:-3]
        level = f"{record.levelname:<8s}"
        if self.color and record.levelno in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelno]}{level}{self.RESET}"

        fields = ' '.join(f"{k}={v}" for k, v in _record_context(record).items())
        head = f"{ts} {level} {record.name}"
        if fields:
            head = f"{head} [{fields}]"

        line = f"{head} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    """JSON lines; context fields are flattened into the top-level object."""

    def __init__(self, utc: bool = True):
        super().__init__()
        self.utc = utc

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            't': _record_time(record, self.utc).isoformat(),
            'lvl': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, value in _record_context(record).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def make_formatter(fmt: str = "human", color: bool = False, utc: bool = True) -> logging.Formatter:
    """Build the formatter named ``fmt`` ("human" or "json")."""
    if fmt == "human":
        return HumanFormatter(color=color, utc=utc)
    if fmt == "json":
        return JsonFormatter(utc=utc)
    raise ValueError(f"Unknown log format '{fmt}', expected 'human' or 'json'")


# ============================================================================
# SETUP
# ============================================================================

def _file_handler(log_file: str, rotate: Optional[Dict[str, Any]]) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not rotate:
        return logging.FileHandler(path, encoding='utf-8')

    mode = rotate.get('mode', 'size')
    if mode not in _ROTATION_DEFAULTS:
        raise ValueError(f"Unknown rotation mode '{mode}', expected one of {sorted(_ROTATION_DEFAULTS)}")
    opts = {**_ROTATION_DEFAULTS[mode], **{k: v for k, v in rotate.items() if k != 'mode'}}

    if mode == 'size':
        return logging.handlers.RotatingFileHandler(
            path, maxBytes=opts['max_bytes'], backupCount=opts['backup_count'], encoding='utf-8'
        )
    return logging.handlers.TimedRotatingFileHandler(
        path, when=opts['when'], interval=opts['interval'],
        backupCount=opts['backup_count'], encoding='utf-8'
    )


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: Optional[bool] = None,
    to_stderr: bool = True,
    rotate: Optional[Dict[str, Any]] = None,
    utc: bool = True,
    capture_warnings: bool = True,
    quiet_libs: Optional[List[str]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Configure the root logger.

    Parameters
    ----------
    log_level : str
        Root level name, case-insensitive
    log_file : str, optional
        Also log to this file (parent directories are created)
    json : bool
        JSON lines in the file handler; the console is always human-readable
    color : bool, optional
        ANSI level colors on the console; None means "if stderr is a TTY"
    to_stderr : bool
        Install a console handler on stderr
    rotate : dict, optional
        ``{"mode": "size", "max_bytes": ..., "backup_count": ...}`` or
        ``{"mode": "time", "when": "midnight", "backup_count": ...}``;
        missing keys take the defaults in ``_ROTATION_DEFAULTS``
    utc : bool
        UTC timestamps (default) or local time
    capture_warnings : bool
        Route ``warnings.warn`` (e.g. InvalidSettingsWarning from settings
        clamping) to the ``py.warnings`` logger
    quiet_libs : list[str], optional
        Loggers held at WARNING; defaults to ``DEFAULT_QUIET_LIBS``
    context : dict, optional
        Fields pushed onto the context for the rest of the process

    Returns
    -------
    dict
        ``{"handlers": [...], "level": int}``

    Raises
    ------
    ValueError
        Unknown level name or rotation mode
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level '{log_level}'")

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    if color is None:
        color = sys.stderr.isatty()

    handlers: List[logging.Handler] = []
    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(make_formatter("human", color=color, utc=utc))
        handlers.append(console)
    if log_file:
        file_handler = _file_handler(log_file, rotate)
        file_handler.setFormatter(make_formatter("json" if json else "human", utc=utc))
        handlers.append(file_handler)

    context_filter = ContextFilter()
    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)
        _installed.append(handler)
    root.setLevel(level)

    for lib in (DEFAULT_QUIET_LIBS if quiet_libs is None else quiet_libs):
        logging.getLogger(lib).setLevel(logging.WARNING)

    logging.captureWarnings(capture_warnings)

    if context:
        push_context(**context)

    return {'handlers': list(handlers), 'level': level}


def get_logger(name: str) -> logging.Logger:
    """``logging.getLogger`` alias kept for call sites that import from here."""
    return logging.getLogger(name)


def set_level(level: str) -> None:
    """Change the root level at runtime (e.g. from a --verbose toggle)."""
    logging.getLogger().setLevel(level.upper())


def install_excepthook() -> None:
    """Log uncaught exceptions as CRITICAL; Ctrl+C keeps the default hook."""
    def _hook(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logging.getLogger('cncai').critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_tb)
        )

    sys.excepthook = _hook
