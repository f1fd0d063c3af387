"""Process-wide event log written to a file, to syslog or to standard error."""

from __future__ import annotations

import os
import sys
import threading
from dataclasses import dataclass, field
from typing import NoReturn, Optional, TextIO, Union

try:
    import syslog as _syslog
except ImportError:  # not available on every platform
    _syslog = None


class FatalError(RuntimeError):
    """Raised when the daemon hits a condition it cannot continue from."""


@dataclass
class _LogState:
    path: Optional[str] = None
    file: Optional[TextIO] = None
    syslog: bool = False
    instance: Optional[str] = None
    lock: threading.RLock = field(default_factory=threading.RLock)


_state = _LogState()


def open_log(path: Optional[str]) -> None:
    """Route the log to ``path``, to syslog for ``"syslog"``, or to stderr for None."""
    with _state.lock:
        if path is None:
            _state.syslog = False
            if _state.file is not None:
                _state.file.close()
            _state.file = None
            _state.path = None
            return

        if path == "syslog":
            if _syslog is None:
                sys.stderr.write("syslog is not available on this platform\n")
                return
            _syslog.openlog(logoption=_syslog.LOG_PID, facility=_syslog.LOG_LOCAL7)
            _state.syslog = True
            return

        try:
            new_log = open(path, "a", encoding="utf-8")
        except OSError:
            sys.stderr.write(f"Failed to open log file at '{path}'\n")
            return

        if _state.file is not None:
            _state.file.close()

        if _state.syslog:
            if _syslog is not None:
                _syslog.closelog()
            _state.syslog = False

        _state.file = new_log
        _state.path = path


def reopen_log() -> None:
    """Open the current log file again, e.g. after it was rotated away."""
    with _state.lock:
        path = _state.path
    if path is not None:
        open_log(path)


def write_log(message: str) -> None:
    """Write an already formatted message to the active destination."""
    with _state.lock:
        if _state.syslog and _syslog is not None:
            _syslog.syslog(_syslog.LOG_INFO, message)
        elif _state.file is not None:
            _state.file.write(message)
            _state.file.flush()
        else:
            sys.stderr.write(message)
            sys.stderr.flush()


def set_instance(instance: Optional[str]) -> None:
    """Set the instance name prefixed to every event line."""
    _state.instance = instance


def get_instance() -> Optional[str]:
    """Return the instance name prefixed to every event line."""
    return _state.instance


def log_splunk(message: str) -> None:
    """Write a ``key=value`` event line tagged with the instance name."""
    instance = _state.instance if _state.instance is not None else "(null)"
    write_log(f"instance={instance} {message}\n")


def log_splunk_errno(message: str, error: Union[OSError, int]) -> None:
    """Write an event line followed by the error number and its description."""
    if isinstance(error, OSError):
        code = error.errno or 0
        text = error.strerror or os.strerror(code)
    else:
        code = int(error)
        text = os.strerror(code)
    log_splunk(f'{message} errno={code} msg="{text}"')


def die(message: str) -> NoReturn:
    """Report a fatal error on stderr and raise :class:`FatalError`."""
    sys.stderr.write(f"[FATAL]: {message}\n")
    sys.stderr.flush()
    raise FatalError(message)