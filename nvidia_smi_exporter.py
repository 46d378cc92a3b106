#!/usr/bin/env python3

import argparse
import contextlib
import csv
import functools
import io
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

from dotenv import load_dotenv  # 用於讀取 .env
from prometheus_client import (CONTENT_TYPE_LATEST, CollectorRegistry, Counter,
                               Gauge, Histogram, generate_latest)

__version__ = "0.1.0"

logger = logging.getLogger("nvidia_smi_exporter")

DEFAULT_ADDR = ":9100"
DEFAULT_NVIDIA_SMI = "nvidia-smi"
DEFAULT_TEXT_UPDATE = 5.0  # seconds
DEFAULT_QUERY_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

METRICS_PATH = "/metrics"
SELF_METRICS_PATH = "/exporter/metrics"
TEXT_PLAIN = "text/plain; charset=utf-8"

PULL = "pull"
PUSH = "push"

########################################
# 1) 查詢欄位與指標名稱
########################################

# nvidia-smi 輸出順序: name, index, 然後是下面這些
METRIC_FIELDS = (
    "temperature.gpu",
    "utilization.gpu",
    "utilization.memory",
    "memory.total",
    "memory.free",
    "memory.used",
)
QUERY_FIELDS = ("name", "index") + METRIC_FIELDS
METRIC_NAMES = tuple(field.replace(".", "_") for field in METRIC_FIELDS)
ROW_WIDTH = 2 + len(METRIC_FIELDS)

# exporter 自身的指標, 只在 /exporter/metrics 輸出
REGISTRY = CollectorRegistry()
SAMPLES_TOTAL = Counter("nvidia_smi_exporter_samples",
                        "Pipeline runs, successful or not",
                        registry=REGISTRY)
ERRORS_TOTAL = Counter("nvidia_smi_exporter_errors",
                       "Failed pipeline runs by error kind",
                       ["kind"], registry=REGISTRY)
QUERY_DURATION = Histogram("nvidia_smi_exporter_query_duration_seconds",
                           "Time spent waiting on nvidia-smi",
                           registry=REGISTRY)
DEVICES_GAUGE = Gauge("nvidia_smi_exporter_devices",
                      "Devices in the last successful sample",
                      registry=REGISTRY)


########################################
# 2) Errors
########################################
class ExporterError(Exception):
    pass


class InventoryUnavailable(ExporterError):
    """nvidia-smi is missing, exited non-zero or timed out."""


class MalformedRow(ExporterError):
    """Inventory output could not be tokenized or has too few fields."""


class SinkUnavailable(ExporterError):
    """The push output file cannot be written."""


class ShutdownTimeout(ExporterError):
    pass


########################################
# 3) Config
########################################
@dataclass(frozen=True)
class ExporterConfig:
    addr: str = DEFAULT_ADDR
    text_path: str = ""
    text_update: float = DEFAULT_TEXT_UPDATE
    nvidia_smi: str = DEFAULT_NVIDIA_SMI
    query_timeout: float = DEFAULT_QUERY_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    log_level: str = "INFO"
    once: bool = False

    @property
    def mode(self):
        # 沒有設定 text_path 就走 HTTP
        return PULL if self.text_path == "" else PUSH


def split_addr(addr):
    """Split ``host:port`` into a bindable tuple.

    ``:9100`` binds every interface and ``[::1]:9100`` an IPv6 host.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid listen address {addr!r}, want host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _addr_arg(value):
    try:
        split_addr(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc))
    return value


def _positive_float(value):
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# argparse 不會用 choices 檢查來自環境變數的預設值
def _log_level(value):
    level = value.upper()
    if level not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(f"unknown log level: {value!r}")
    return level


def parse_args(argv=None, environ=None):
    env = os.environ if environ is None else environ

    def default(name, fallback):
        return env.get("NVIDIA_SMI_EXPORTER_" + name, fallback)

    parser = argparse.ArgumentParser(
        prog="nvidia-smi-exporter",
        description="Expose nvidia-smi telemetry in the Prometheus text format")
    parser.add_argument("--addr", type=_addr_arg, default=default("ADDR", DEFAULT_ADDR),
                        help="addr to listen on for HTTP (default: %(default)s)")
    parser.add_argument("--text-path", default=default("TEXT_PATH", ""),
                        help="path to write metrics to, '-' for stdout; "
                             "set this and no HTTP server is started")
    parser.add_argument("--text-update", type=_positive_float,
                        default=default("TEXT_UPDATE", str(DEFAULT_TEXT_UPDATE)),
                        help="seconds between text updates (default: %(default)s)")
    parser.add_argument("--nvidia-smi", default=default("NVIDIA_SMI", DEFAULT_NVIDIA_SMI),
                        help="nvidia-smi executable (default: %(default)s)")
    parser.add_argument("--query-timeout", type=_positive_float,
                        default=default("QUERY_TIMEOUT", str(DEFAULT_QUERY_TIMEOUT)),
                        help="seconds to wait for nvidia-smi (default: %(default)s)")
    parser.add_argument("--shutdown-timeout", type=_positive_float,
                        default=default("SHUTDOWN_TIMEOUT", str(DEFAULT_SHUTDOWN_TIMEOUT)),
                        help="seconds to wait for in-flight requests on shutdown")
    parser.add_argument("--log-level", default=default("LOG_LEVEL", "INFO"),
                        type=_log_level,
                        help="one of " + ", ".join(LOG_LEVELS) + " (default: %(default)s)")
    parser.add_argument("--once", action="store_true",
                        help="write a single sample and exit (text mode only)")
    return parser.parse_args(argv)


def load_config(argv=None, environ=None) -> ExporterConfig:
    load_dotenv()
    args = parse_args(argv, environ)
    return ExporterConfig(
        addr=args.addr,
        text_path=args.text_path,
        text_update=args.text_update,
        nvidia_smi=args.nvidia_smi,
        query_timeout=args.query_timeout,
        shutdown_timeout=args.shutdown_timeout,
        log_level=args.log_level,
        once=args.once,
    )


def setup_logging(level="INFO"):
    # stdout 可能是輸出目標, log 一律寫到 stderr
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)s %(message)s",
        stream=sys.stderr,
    )


########################################
# 4) nvidia-smi → rows → exposition text
########################################
def query_inventory(nvidia_smi=DEFAULT_NVIDIA_SMI, timeout=DEFAULT_QUERY_TIMEOUT) -> bytes:
    # 每次呼叫都重新啟動一個 nvidia-smi 行程
    cmd = [nvidia_smi,
           "--query-gpu=" + ",".join(QUERY_FIELDS),
           "--format=csv,noheader,nounits"]
    try:
        proc = subprocess.run(cmd, capture_output=True, check=True, timeout=timeout)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode("utf-8", errors="replace").strip()
        raise InventoryUnavailable(
            f"{nvidia_smi} exited with status {exc.returncode}: {stderr}") from exc
    except subprocess.TimeoutExpired as exc:
        raise InventoryUnavailable(f"{nvidia_smi} timed out after {timeout}s") from exc
    except OSError as exc:
        raise InventoryUnavailable(f"cannot run {nvidia_smi}: {exc}") from exc
    return proc.stdout


def parse_rows(raw: bytes):
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedRow(f"inventory output is not utf-8: {exc}") from exc

    reader = csv.reader(io.StringIO(text), skipinitialspace=True, strict=True)
    try:
        # skipinitialspace 只處理空白字元, tab 要另外去掉
        return [[field.lstrip() for field in row] for row in reader if row]
    except csv.Error as exc:
        raise MalformedRow(f"line {reader.line_num}: {exc}") from exc


def format_metrics(records):
    lines = []
    for rownum, row in enumerate(records, 1):
        if len(row) < ROW_WIDTH:
            raise MalformedRow(
                f"row {rownum}: expected {ROW_WIDTH} fields, got {len(row)}: {row!r}")
        gpu = f"{row[0]}[{row[1]}]"
        for metric, value in zip(METRIC_NAMES, row[2:]):
            lines.append(f'{metric}{{gpu="{gpu}"}} {value}')
    return lines


def render_sample(lines):
    return "".join(line + "\n" for line in lines)


def collect_sample(nvidia_smi=DEFAULT_NVIDIA_SMI, timeout=DEFAULT_QUERY_TIMEOUT):
    SAMPLES_TOTAL.inc()
    try:
        with QUERY_DURATION.time():
            raw = query_inventory(nvidia_smi, timeout)
        records = parse_rows(raw)
        lines = format_metrics(records)
    except ExporterError as exc:
        ERRORS_TOTAL.labels(kind=type(exc).__name__).inc()
        raise
    DEVICES_GAUGE.set(len(records))
    return render_sample(lines)


def make_sampler(config: ExporterConfig):
    return functools.partial(collect_sample, config.nvidia_smi, config.query_timeout)


########################################
# 5) Pull: HTTP server
########################################
class MetricsHandler(BaseHTTPRequestHandler):
    server_version = "nvidia-smi-exporter/" + __version__

    def __getattr__(self, name):
        # 任何 HTTP method 都走同一個 route
        if name.startswith("do_"):
            return self.route
        raise AttributeError(name)

    def route(self):
        path = urlsplit(self.path).path
        if path == METRICS_PATH or path.startswith(METRICS_PATH + "/"):
            self.serve_sample()
        elif path == SELF_METRICS_PATH:
            self.reply(200, generate_latest(REGISTRY), CONTENT_TYPE_LATEST)
        else:
            self.reply(404, b"Not Found\n", TEXT_PLAIN)

    def serve_sample(self):
        try:
            body = self.server.sampler()
        except (InventoryUnavailable, MalformedRow) as exc:
            logger.error("%s", exc)
            self.reply(500, str(exc).encode("utf-8"), TEXT_PLAIN)
            return
        self.reply(200, body.encode("utf-8"), CONTENT_TYPE_LATEST)

    def reply(self, status, body, content_type):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def log_message(self, format, *args):
        logger.debug("%s %s", self.address_string(), format % args)


class ExporterHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, server_address, handler_class, sampler):
        self.sampler = sampler
        self.inflight = 0
        self._idle = threading.Condition()
        super().__init__(server_address, handler_class)

    def process_request(self, request, client_address):
        # counted on the accept thread, before the worker starts
        with self._idle:
            self.inflight += 1
        super().process_request(request, client_address)

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._idle:
                self.inflight -= 1
                self._idle.notify_all()

    def wait_idle(self, timeout):
        with self._idle:
            return self._idle.wait_for(lambda: self.inflight == 0, timeout)


class ExporterHTTPServerV6(ExporterHTTPServer):
    address_family = socket.AF_INET6


class DualStackHTTPServer(ExporterHTTPServerV6):
    # 同一個 socket 同時接 IPv4 與 IPv6, 跟 http.server 的 DualStackServer 一樣
    def server_bind(self):
        with contextlib.suppress(AttributeError, OSError):
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()


def _server_for(host, port):
    if host == "" and socket.has_dualstack_ipv6():
        return DualStackHTTPServer, ("::", port)
    if ":" in host:
        return ExporterHTTPServerV6, (host, port)
    return ExporterHTTPServer, (host, port)


STOPPED = "stopped"
LISTENING = "listening"
DRAINING = "draining"


class PullServer:
    def __init__(self, config: ExporterConfig, sampler=None):
        self.config = config
        self.sampler = sampler or make_sampler(config)
        self.state = STOPPED
        self._httpd = None
        self._thread = None

    @property
    def server_address(self):
        return self._httpd.server_address[:2]

    def start(self):
        server_cls, address = _server_for(*split_addr(self.config.addr))
        try:
            self._httpd = server_cls(address, MetricsHandler, self.sampler)
        except OSError:
            # 主機沒有 IPv6 位址時退回 IPv4
            if server_cls is not DualStackHTTPServer:
                raise
            self._httpd = ExporterHTTPServer(("", address[1]), MetricsHandler, self.sampler)
        self._thread = threading.Thread(target=self._httpd.serve_forever,
                                        name="http-server", daemon=True)
        self._thread.start()
        self.state = LISTENING
        logger.info("starting serve on %s", self.config.addr)

    def shutdown(self, timeout=None):
        if self.state != LISTENING:
            return
        if timeout is None:
            timeout = self.config.shutdown_timeout
        self.state = DRAINING
        self._httpd.shutdown()
        self._httpd.server_close()
        drained = self._httpd.wait_idle(timeout)
        self._thread.join()
        self.state = STOPPED
        if not drained:
            raise ShutdownTimeout(
                f"{self._httpd.inflight} request(s) still running after {timeout}s")
        logger.info("http server stopped")


########################################
# 6) Push: 定期寫檔
########################################
IDLE = "idle"
SAMPLING = "sampling"


class PushWriter:
    def __init__(self, config: ExporterConfig, stop: threading.Event, sampler=None, stream=None):
        self.config = config
        self.stop = stop
        self.sampler = sampler or make_sampler(config)
        self.stream = sys.stdout if stream is None else stream
        self.state = IDLE
        self.cycles = 0

    @property
    def to_stream(self):
        return self.config.text_path == "-"

    def _tmppath(self):
        path = self.config.text_path
        return f"{path}.{os.getpid()}.{threading.get_ident()}"

    def check_sink(self):
        if self.to_stream:
            return
        tmppath = self._tmppath()
        try:
            with open(tmppath, "w"):
                pass
            os.remove(tmppath)
        except OSError as exc:
            raise SinkUnavailable(f"cannot write {self.config.text_path}: {exc}") from exc

    def write(self, text):
        if self.to_stream:
            try:
                self.stream.write(text)
                self.stream.flush()
            except OSError as exc:
                raise SinkUnavailable(f"cannot write to stdout: {exc}") from exc
            return

        # 先寫暫存檔再 rename
        path = self.config.text_path
        tmppath = self._tmppath()
        try:
            fd = os.open(tmppath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o660)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmppath, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.remove(tmppath)
            raise SinkUnavailable(f"cannot write {path}: {exc}") from exc

    def run_once(self):
        """Sample and write once. Returns False if the sample failed."""
        self.state = SAMPLING
        try:
            try:
                text = self.sampler()
            except (InventoryUnavailable, MalformedRow) as exc:
                logger.error("%s", exc)
                return False
            self.write(text)
            return True
        finally:
            self.cycles += 1
            self.state = IDLE

    def run(self):
        logger.info("outputting to: %s", self.config.text_path)
        self.check_sink()
        try:
            while not self.stop.is_set():
                self.run_once()
                if self.config.once:
                    break
                if self.stop.wait(self.config.text_update):
                    break
        finally:
            self.state = STOPPED


########################################
# 7) 主程式
########################################
def install_signal_handlers(stop: threading.Event):
    def _handle(signum, frame):
        logger.info("received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run(config: ExporterConfig, stop: threading.Event) -> int:
    if config.mode == PULL:
        server = PullServer(config)
        try:
            server.start()
        except (OSError, ValueError) as exc:
            logger.error("cannot listen on %s: %s", config.addr, exc)
            return 1
        while not stop.wait(0.5):
            pass
        try:
            server.shutdown()
        except ShutdownTimeout as exc:
            logger.error("shutdown: %s", exc)
        return 0

    writer = PushWriter(config, stop)
    try:
        writer.run()
    except SinkUnavailable as exc:
        logger.error("%s", exc)
        return 1
    return 0


def main(argv=None):
    config = load_config(argv)
    setup_logging(config.log_level)
    stop = threading.Event()
    install_signal_handlers(stop)
    return run(config, stop)


if __name__ == "__main__":
    sys.exit(main())
