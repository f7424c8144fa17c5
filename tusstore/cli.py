"""Command line of the upload server: flags, greeting, version and logging."""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import threading
from collections import Counter
from dataclasses import MISSING, dataclass, field, fields
from typing import Callable, Optional, Sequence, TextIO

from tusstore.hooks import AVAILABLE_HOOKS, HookType
from tusstore.listener import Conn, new_listener, new_unix_listener

VERSION_NAME = "n/a"
GIT_COMMIT = "n/a"
BUILD_DATE = "n/a"

_CPU_PROFILE_SECONDS = 20
_MAX_REQUEST_HEAD = 64 * 1024


@dataclass
class Flags:
    """The server's settings as given on the command line."""

    http_host: str = "0.0.0.0"
    http_port: str = "1080"
    http_sock: str = ""
    max_size: int = 0
    upload_dir: str = "./data"
    basepath: str = "/files/"
    timeout: int = 6 * 1000
    s3_bucket: str = ""
    s3_object_prefix: str = ""
    s3_endpoint: str = ""
    s3_part_size: int = 50 * 1024 * 1024
    s3_disable_content_hashes: bool = False
    s3_disable_ssl: bool = False
    gcs_bucket: str = ""
    gcs_object_prefix: str = ""
    enabled_hooks_string: str = (
        "pre-create,post-create,post-receive,post-terminate,post-finish"
    )
    file_hooks_dir: str = ""
    http_hooks_endpoint: str = ""
    http_hooks_forward_headers: str = ""
    http_hooks_retry: int = 3
    http_hooks_backoff: int = 1
    grpc_hooks_endpoint: str = ""
    grpc_hooks_retry: int = 3
    grpc_hooks_backoff: int = 1
    hooks_stop_upload_code: int = 0
    plugin_hook_path: str = ""
    show_version: bool = False
    expose_metrics: bool = True
    metrics_path: str = "/metrics"
    behind_proxy: bool = False
    verbose_output: bool = True
    s3_transfer_acceleration: bool = False
    tls_cert_file: str = ""
    tls_key_file: str = ""
    tls_mode: str = "tls12"
    cpu_profile: str = ""
    enabled_hooks: list[HookType] = field(default_factory=list)
    args: list[str] = field(default_factory=list)


# (flag name, Flags field, help text); the value type follows the field.
_FLAG_SPECS: tuple[tuple[str, str, str], ...] = (
    ("host", "http_host", "Host to bind HTTP server to"),
    ("port", "http_port", "Port to bind HTTP server to"),
    ("unix-sock", "http_sock",
     "If set, will listen to a UNIX socket at this location instead of a TCP socket"),
    ("max-size", "max_size", "Maximum size of a single upload in bytes"),
    ("upload-dir", "upload_dir", "Directory to store uploads in"),
    ("base-path", "basepath", "Basepath of the HTTP server"),
    ("timeout", "timeout",
     "Read timeout for connections in milliseconds. A zero value means that reads will not timeout"),
    ("s3-bucket", "s3_bucket", "Use AWS S3 with this bucket as storage backend"),
    ("s3-object-prefix", "s3_object_prefix", "Prefix for S3 object names"),
    ("s3-endpoint", "s3_endpoint",
     "Endpoint to use S3 compatible implementations (requires s3-bucket to be passed)"),
    ("s3-part-size", "s3_part_size",
     "Size in bytes of the individual upload requests made to the S3 API"),
    ("s3-disable-content-hashes", "s3_disable_content_hashes",
     "Disable the calculation of MD5 and SHA256 hashes for the content uploaded to S3"),
    ("s3-disable-ssl", "s3_disable_ssl",
     "Disable SSL and only use HTTP for communication with S3"),
    ("gcs-bucket", "gcs_bucket",
     "Use Google Cloud Storage with this bucket as storage backend"),
    ("gcs-object-prefix", "gcs_object_prefix",
     "Prefix for GCS object names (can't contain underscore character)"),
    ("hooks-enabled-events", "enabled_hooks_string",
     "Comma separated list of enabled hook events (e.g. post-create,post-finish). "
     "Leave empty to enable all events"),
    ("hooks-dir", "file_hooks_dir", "Directory to search for available hooks scripts"),
    ("hooks-http", "http_hooks_endpoint",
     "An HTTP endpoint to which hook events will be sent to"),
    ("hooks-http-forward-headers", "http_hooks_forward_headers",
     "List of HTTP request headers to be forwarded from the client request to the hook endpoint"),
    ("hooks-http-retry", "http_hooks_retry",
     "Number of times to retry on a 500 or network timeout"),
    ("hooks-http-backoff", "http_hooks_backoff",
     "Number of seconds to wait before retrying each retry"),
    ("hooks-grpc", "grpc_hooks_endpoint",
     "An gRPC endpoint to which hook events will be sent to"),
    ("hooks-grpc-retry", "grpc_hooks_retry",
     "Number of times to retry on a server error or network timeout"),
    ("hooks-grpc-backoff", "grpc_hooks_backoff",
     "Number of seconds to wait before retrying each retry"),
    ("hooks-stop-code", "hooks_stop_upload_code",
     "Return code from post-receive hook which causes the server to stop and delete "
     "the current upload. A zero value means that no uploads will be stopped"),
    ("hooks-plugin", "plugin_hook_path", "Path to a plugin for loading hook functions"),
    ("version", "show_version", "Print version information"),
    ("expose-metrics", "expose_metrics", "Expose metrics about server usage"),
    ("metrics-path", "metrics_path",
     "Path under which the metrics endpoint will be accessible"),
    ("behind-proxy", "behind_proxy",
     "Respect X-Forwarded-* and similar headers which may be set by proxies"),
    ("verbose", "verbose_output", "Enable verbose logging output"),
    ("s3-transfer-acceleration", "s3_transfer_acceleration",
     "Use AWS S3 transfer acceleration endpoint"),
    ("tls-certificate", "tls_cert_file",
     "Path to the file containing the x509 TLS certificate to be used"),
    ("tls-key", "tls_key_file", "Path to the file containing the key for the TLS certificate."),
    ("tls-mode", "tls_mode",
     "Specify which TLS mode to use; valid modes are tls13, tls12, and tls12-strong."),
    ("cpuprofile", "cpu_profile", "write cpu profile to file"),
)

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}
_OCTAL_RE = re.compile(r"[+-]?0[0-7]+")


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


def _parse_int(text: str) -> int:
    try:
        if _OCTAL_RE.fullmatch(text):
            return int(text, 8)
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value {text!r}") from None


_DEFAULT_VALUES = {f.name: f.default for f in fields(Flags) if f.default is not MISSING}
_FIELD_TYPES = {
    spec_field: type(_DEFAULT_VALUES[spec_field]) for _, spec_field, _ in _FLAG_SPECS
}
_BOOL_FLAGS = frozenset(
    name for name, spec_field, _ in _FLAG_SPECS if _FIELD_TYPES[spec_field] is bool
)
_VALUE_FLAGS = frozenset(name for name, _, _ in _FLAG_SPECS) - _BOOL_FLAGS


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tusd", add_help=False, allow_abbrev=False
    )
    parser.add_argument("-h", "-help", "--help", action="help",
                        help="show this help message and exit")
    for name, spec_field, help_text in _FLAG_SPECS:
        kind = _FIELD_TYPES[spec_field]
        converter = {bool: _parse_bool, int: _parse_int}.get(kind, str)
        parser.add_argument(
            f"-{name}", f"--{name}",
            dest=spec_field,
            type=converter,
            default=_DEFAULT_VALUES[spec_field],
            help=help_text,
        )
    return parser


def _split_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Separate flags from the arguments that follow them.

    Parsing stops at the first token that is not a flag or at ``--``; a
    boolean flag given without a value means true.
    """
    flag_tokens: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            return flag_tokens, list(argv[i + 1:])
        if not token.startswith("-") or token == "-":
            break
        body = token[2:] if token.startswith("--") else token[1:]
        name, eq, _ = body.partition("=")
        if name in _BOOL_FLAGS and not eq:
            token += "=true"
        flag_tokens.append(token)
        if not eq and name in _VALUE_FLAGS and i + 1 < len(argv):
            flag_tokens.append(argv[i + 1])
            i += 1
        i += 1
    return flag_tokens, list(argv[i:])


def parse_enabled_hooks(value: str) -> list[HookType]:
    """Turn a comma separated list of hook names into hook types.

    An empty value enables every available hook. Unknown names raise
    ValueError.
    """
    enabled: list[HookType] = []
    if value:
        for raw in value.split(","):
            name = raw.strip()
            try:
                enabled.append(HookType(name))
            except ValueError:
                raise ValueError(
                    f"Unknown hook event type in -hooks-enabled-events flag: {name}"
                ) from None
    return enabled or list(AVAILABLE_HOOKS)


def parse_flags(argv: Optional[Sequence[str]] = None) -> Flags:
    """Parse the command line; bad flags exit like any argparse program."""
    argv = sys.argv[1:] if argv is None else list(argv)
    flag_tokens, rest = _split_args(argv)
    parsed = vars(_build_parser().parse_args(flag_tokens))
    values = {f.name: parsed[f.name] for f in fields(Flags) if f.name in parsed}
    flags = Flags(**values, args=rest)
    flags.enabled_hooks = parse_enabled_hooks(flags.enabled_hooks_string)
    if flags.file_hooks_dir:
        flags.file_hooks_dir = os.path.abspath(flags.file_hooks_dir)
    return flags


def prepare_greeting(flags: Flags) -> str:
    """Return the welcome text shown at the server's root path."""
    return f"""Welcome to tusd
===============

Congratulations on setting up tusd! Thanks for joining our cause, you have taken
the first step towards making the future of resumable uploading a reality! We
hope you are as excited about this as we are!

While you did an awesome job on getting tusd running, this is just the welcome
message, so let's talk about the places that really matter:

- {flags.basepath} - send your tus uploads to this endpoint
- {flags.metrics_path} - gather statistics to keep tusd running smoothly

So quit lollygagging, send over your files and experience the future!

Version = {VERSION_NAME}
GitCommit = {GIT_COMMIT}
BuildDate = {BUILD_DATE}
"""


def version_text() -> str:
    """Return the version, commit and build date lines."""
    return f"Version: {VERSION_NAME}\nCommit: {GIT_COMMIT}\nDate: {BUILD_DATE}\n"


def log_event(logger: logging.Logger, event_name: str, *args: str) -> None:
    """Log an event followed by ``key="value"`` pairs taken from ``args``."""
    parts = [f'event="{event_name}"']
    pairs = iter(args)
    for key, value in zip(pairs, pairs):
        parts.append(f'{key}="{value}"')
    logger.info(" ".join(parts))


class _StdHandler(logging.Handler):
    """Writes to the stream its getter returns at the time of logging."""

    def __init__(self, stream_getter: Callable[[], TextIO]) -> None:
        super().__init__()
        self._stream_getter = stream_getter

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._stream_getter()
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def _make_logger(name: str, stream_getter: Callable[[], TextIO]) -> logging.Logger:
    logger = logging.getLogger(f"tusstore.cli.{name}")
    if not logger.handlers:
        handler = _StdHandler(stream_getter)
        handler.setFormatter(
            logging.Formatter("[tusd] %(asctime)s %(message)s", "%Y/%m/%d %H:%M:%S")
        )
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


_stdout = _make_logger("stdout", lambda: sys.stdout)
_stderr = _make_logger("stderr", lambda: sys.stderr)


class _CallProfiler:
    """Counts function calls in every thread until stopped."""

    def __init__(self) -> None:
        self.counts: Counter[tuple[str, int, str]] = Counter()
        self.active = True

    def __call__(self, frame, event, arg) -> None:
        if not self.active:
            sys.setprofile(None)
            return
        if event == "call":
            code = frame.f_code
            self.counts[(code.co_filename, code.co_firstlineno, code.co_name)] += 1

    def start(self) -> None:
        threading.setprofile(self)
        sys.setprofile(self)

    def stop(self) -> None:
        self.active = False
        threading.setprofile(None)
        sys.setprofile(None)

    def dump(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as out:
            for (filename, line, name), count in self.counts.most_common():
                out.write(f"{count}\t{name}\t{filename}:{line}\n")


def _start_cpu_profile(path: str) -> None:
    with open(path, "wb"):
        pass
    profiler = _CallProfiler()
    profiler.start()

    def stop() -> None:
        profiler.stop()
        profiler.dump(path)
        print("Stopped CPU profile")

    timer = threading.Timer(_CPU_PROFILE_SECONDS, stop)
    timer.daemon = True
    timer.start()


def _answer_with_greeting(conn: Conn, greeting: bytes) -> None:
    with conn:
        try:
            head = bytearray()
            while b"\r\n\r\n" not in head and len(head) < _MAX_REQUEST_HEAD:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                head += chunk
            response = (
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: text/plain; charset=utf-8\r\n"
                + f"Content-Length: {len(greeting)}\r\n".encode("ascii")
                + b"Connection: close\r\n\r\n"
                + greeting
            )
            conn.send(response)
        except OSError:
            pass


def _serve(flags: Flags, greeting: str) -> int:
    timeout = flags.timeout / 1000
    if flags.http_sock:
        address = flags.http_sock
        _stdout.info("Using %s as socket to listen.", address)
    else:
        address = f"{flags.http_host}:{flags.http_port}"
        _stdout.info("Using %s as address to listen.", address)
    _stdout.info("Using %s as the base path.", flags.basepath)

    try:
        if flags.http_sock:
            listener = new_unix_listener(address, timeout, timeout)
        else:
            listener = new_listener(address, timeout, timeout)
    except (OSError, ValueError) as exc:
        _stderr.error("Unable to create listener: %s", exc)
        return 1

    if not flags.http_sock:
        _stdout.info("You can now upload files to: http://%s%s", address, flags.basepath)

    body = greeting.encode("utf-8")
    with listener:
        try:
            while True:
                conn = listener.accept()
                threading.Thread(
                    target=_answer_with_greeting, args=(conn, body), daemon=True
                ).start()
        except KeyboardInterrupt:
            return 0
        except OSError as exc:
            _stderr.error("Unable to serve: %s", exc)
            return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command and return its exit status."""
    try:
        flags = parse_flags(argv)
    except ValueError as exc:
        _stderr.error("%s", exc)
        return 1

    if flags.cpu_profile:
        try:
            _start_cpu_profile(flags.cpu_profile)
        except OSError as exc:
            _stderr.error("%s", exc)
            return 1

    greeting = prepare_greeting(flags)
    if flags.show_version:
        sys.stdout.write(version_text())
        return 0
    return _serve(flags, greeting)


if __name__ == "__main__":
    sys.exit(main())