"""The daemon: configuration loading, housekeeping loop, signals and metric dumps."""

from __future__ import annotations

import json
import signal
import threading
from typing import Any, Callable, Dict, List, Optional

from .backend import BackendType
from .carbon import CarbonBackend
from .datadog import DatadogBackend
from .log import FatalError, die, log_splunk, log_splunk_errno, reopen_log, set_instance
from .metric import InternalStats, init_internal_stats
from .rwi_carbon import RwiCarbonBackend
from .rwid import RwidSampler
from .statsd import StatsdSampler
from .store import MetricTable
from .utils import ConfigError, unpack_config

MAX_BACKENDS = 8
MAX_SAMPLERS = 8
SPT_BUFSIZE = 2048
_TITLE_BUFSIZE = 2048

_UPARROW = "\u2191"
_DOWNARROW = "\u2193"
_SIZE_SUFFIX = ("b", "kb", "mb", "gb", "tb", "pb", "eb")
_METRIC_NAMES = ("g", "c", "C", "h", "ms", "internal")

_BACKEND_FACTORIES: Dict[str, Callable[[Any, Any], Any]] = {
    "carbon": CarbonBackend.from_config,
    "rwi_carbon": RwiCarbonBackend.from_config,
    "datadog": DatadogBackend.from_config,
}

_SAMPLER_FACTORIES: Dict[str, Callable[[Any, Any], Any]] = {
    "statsd": StatsdSampler.from_config,
    "rwid": RwidSampler.from_config,
}

_title_lock = threading.Lock()
_title: Optional[str] = None


def config_name(path: str) -> str:
    """The configuration's name: its file name without the last extension."""
    filename = path.rsplit("/", 1)[-1]
    stem, dot, _ = filename.rpartition(".")
    return stem if dot else filename


def set_proctitle(prog: str, txt: str) -> None:
    """Set the process title to ``prog -- txt``; titles that are too long are ignored."""
    global _title
    if len(prog) + len(txt) + 5 > SPT_BUFSIZE:
        return
    with _title_lock:
        _title = f"{prog} -- {txt}"


def get_proctitle() -> Optional[str]:
    """The last title set with :func:`set_proctitle`, or None."""
    with _title_lock:
        return _title


def _human_size(sent: float) -> str:
    index = 0
    while index < len(_SIZE_SUFFIX) - 1 and sent >= 1024.0:
        sent /= 1024.0
        index += 1
    return f"{sent:.1f}{_SIZE_SUFFIX[index]}"


class Server:
    """Holds the metrics table, the backends and the samplers of one daemon."""

    def __init__(self, config_path: str) -> None:
        self.name = "brubeck"
        self.config_name = config_name(config_path)
        self.dump_path: Optional[str] = None
        self.running = False
        self.at_capacity = False
        self.backends: List[Any] = []
        self.samplers: List[Any] = []
        self.internal_stats = InternalStats()
        self.log_all_metrics = 0
        self.log_all_regex: Optional[str] = None
        self.metrics: Optional[MetricTable] = None
        self._stop_event = threading.Event()

        self.config = self._load_json(config_path)
        try:
            self._load_config()
            init_internal_stats(self)
        except FatalError:
            self._teardown()
            raise

    @staticmethod
    def _load_json(path: str) -> Any:
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except json.JSONDecodeError as err:
            die(f"failed to load config file, {err.msg} ({path}:{err.lineno}:{err.colno})")
        except OSError as err:
            die(f"failed to load config file, unable to open {path}: {err.strerror} ({path}:-1:-1)")

    def _load_config(self) -> None:
        try:
            conf = unpack_config(
                self.config,
                {"dumpfile": str, "capacity": int, "backends": object, "samplers": object},
                {"server_name": str, "log_all_metrics": int, "log_all_regex": str},
            )
        except ConfigError as err:
            die(str(err))

        self.name = conf.get("server_name", self.name)
        self.dump_path = conf["dumpfile"]
        self.log_all_metrics = conf.get("log_all_metrics", 0)
        self.log_all_regex = conf.get("log_all_regex")
        set_instance(self.name)

        capacity = conf["capacity"]
        try:
            self.metrics = MetricTable(1 << capacity)
        except ValueError:
            die(f"failed to initialize hash table (capacity: {capacity})")

        self._load_backends(conf["backends"])
        self._load_samplers(conf["samplers"])

    def _load_backends(self, backends: Any) -> None:
        for settings in backends if isinstance(backends, list) else ():
            kind = settings.get("type") if isinstance(settings, dict) else None
            kind = kind if isinstance(kind, str) else None
            factory = _BACKEND_FACTORIES.get(kind) if kind else None
            if factory is None:
                log_splunk(f"backend={kind or '(null)'} event=invalid_backend")
                continue
            if len(self.backends) >= MAX_BACKENDS:
                die(f"too many backends (at most {MAX_BACKENDS})")
            try:
                self.backends.append(factory(self, settings))
            except (ConfigError, ValueError) as err:
                die(f"config error: {err}")

    def _load_samplers(self, samplers: Any) -> None:
        for settings in samplers if isinstance(samplers, list) else ():
            kind = settings.get("type") if isinstance(settings, dict) else None
            kind = kind if isinstance(kind, str) else None
            factory = _SAMPLER_FACTORIES.get(kind) if kind else None
            if factory is None:
                log_splunk(f"sampler={kind or '(null)'} event=invalid_sampler")
                continue
            if len(self.samplers) >= MAX_SAMPLERS:
                die(f"too many samplers (at most {MAX_SAMPLERS})")
            try:
                self.samplers.append(factory(self, settings))
            except (ConfigError, ValueError) as err:
                die(f"config error: {err}")

    def update_flows(self) -> None:
        """Publish every sampler's packet count for the last second."""
        for sampler in self.samplers:
            sampler.update_flow()

    def proctitle(self) -> str:
        """The status line shown as process title: bytes sent and packets per second."""
        parts = [f"[{self.config_name}] [ {_UPARROW}"]
        for i, backend in enumerate(self.backends):
            if backend.type not in (BackendType.CARBON, BackendType.RWI_CARBON):
                continue
            sep = "," if i > 0 else ""
            dc = "" if backend.is_connected() else " (dc)"
            parts.append(f"{sep} #{i + 1} {_human_size(float(backend.sent))}{dc}")
        parts.append(f" ] [ {_DOWNARROW}")
        for i, sampler in enumerate(self.samplers):
            sep = "," if i > 0 else ""
            parts.append(f"{sep} :{sampler.addr[1]} {int(sampler.current_flow)}/s")
        parts.append(" ]")
        return "".join(parts)[: _TITLE_BUFSIZE - 1]

    def dump_metrics(self) -> bool:
        """Write every metric as ``key|type`` to the dump file; tell whether it worked."""
        log_splunk("event=dump_metrics")
        if not self.dump_path:
            log_splunk_errno("event=dump_failed", 0)
            return False
        try:
            with open(self.dump_path, "w+", encoding="utf-8") as dump:
                for metric in self.metrics:
                    kind = int(metric.type)
                    name = _METRIC_NAMES[kind] if kind < len(_METRIC_NAMES) else "internal"
                    dump.write(f"{metric.key}|{name}\n")
        except OSError as err:
            log_splunk_errno("event=dump_failed", err)
            return False
        return True

    def _install_signals(self) -> Dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}
        handlers = {
            "SIGHUP": lambda *_: reopen_log(),
            "SIGUSR2": lambda *_: self.dump_metrics(),
            "SIGINT": lambda *_: self.stop(),
            "SIGTERM": lambda *_: self.stop(),
        }
        previous = {}
        for signame, handler in handlers.items():
            signum = getattr(signal, signame, None)
            if signum is not None:
                previous[signum] = signal.signal(signum, handler)
        return previous

    def _teardown(self) -> None:
        for backend in self.backends:
            backend.stop()
        for sampler in self.samplers:
            sampler.shutdown()

    def run(self) -> int:
        """Refresh flows and the process title every second until stopped."""
        self.running = True
        log_splunk("event=listening")
        previous = self._install_signals()
        try:
            while not self._stop_event.wait(1.0):
                self.update_flows()
                set_proctitle("brubeck", self.proctitle())
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            self.running = False
            self._teardown()
        log_splunk("event=shutdown")
        return 0

    def stop(self) -> None:
        """Ask :meth:`run` to return."""
        self.running = False
        self._stop_event.set()