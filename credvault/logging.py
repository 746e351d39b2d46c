import structlog, sys, pathlib, os

_LOG_STREAM = None
_LOG_STREAM_PATH = None

SECRET_KEYS = ("secret", "password", "key", "code", "totp_secret", "master")


def _default_log_path() -> pathlib.Path:
    return pathlib.Path(os.environ.get("CREDVAULT_LOG", pathlib.Path.home() / ".local" / "state" / "credvault" / "credvault.log"))


def _log_handle(path: pathlib.Path | None = None):
    """Open (or reuse) the 0600 log file, by default under ~/.local/state/credvault."""
    global _LOG_STREAM, _LOG_STREAM_PATH
    target = pathlib.Path(path) if path is not None else _default_log_path()
    if _LOG_STREAM is None or _LOG_STREAM_PATH != target:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(target, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        os.chmod(target, 0o600)
        if _LOG_STREAM is not None:
            _LOG_STREAM.close()
        _LOG_STREAM = os.fdopen(fd, "a", buffering=1)
        _LOG_STREAM_PATH = target
    return _LOG_STREAM


def _human_renderer(_, __, event_dict):
    """Render structlog event dictionaries into human-readable timestamped lines."""
    ts = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "").upper()
    event = event_dict.pop("event", "")
    extras = " ".join(f"{k}={event_dict[k]}" for k in sorted(event_dict))
    return f"{ts} [{level}] {event} {extras}".strip()


def _filter_secrets(_, __, event_dict):
    for k in SECRET_KEYS:
        event_dict.pop(k, None)
    return event_dict


def configure(debug: bool = False, log_path: pathlib.Path | None = None):
    """Route structlog output: stderr in debug, otherwise the secure log file."""
    processors = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.dict_tracebacks,
        _human_renderer,
    ]

    if not debug:
        processors = [_filter_secrets] + processors
        target = _log_handle(log_path)
    else:
        target = sys.stderr

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=target),
    )


def get_logger(name: str | None = None):
    """Return a structlog logger bound to the component name, if given."""
    return structlog.get_logger(component=name) if name else structlog.get_logger()
