from __future__ import annotations

import argparse
import logging
import sys
import threading
from dataclasses import replace

from .client import RelayClient
from .config import RelayRuntimeConfig, apply_config_data, default_config_path, load_toml
from .console import (
    CMD_EXIT,
    CMD_SEND,
    Command,
    emit,
    fmt_error,
    fmt_message,
    fmt_name,
    parse_client_line,
    parse_server_line,
    run_console,
)
from .constants import MAX_NAME_LEN
from .envelope import byte_len
from .logging_config import configure_client_logging, configure_logging
from .service import RelayService


def _port(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {text!r}") from None
    if not 0 <= value <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return value


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="dmrelay", description="Run a direct-message chat relay"
    )

    p.add_argument("port", type=_port, help="TCP port to listen on for clients")
    p.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")

    p.add_argument(
        "--config",
        default=None,
        help=f"Path to a TOML config file (default: {default_config_path()}, if present)",
    )

    p.add_argument(
        "--queue-size",
        type=int,
        default=None,
        help="Router queue capacity; producers block when it is full",
    )
    p.add_argument(
        "--handshake-timeout",
        type=float,
        default=None,
        help="Seconds a new connection has to send its username (0 disables)",
    )
    p.add_argument(
        "--no-console",
        action="store_true",
        help="Do not read commands from stdin (run until SIGINT/SIGTERM)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def _load_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig()

    config_path = args.config
    if config_path is None and default_config_path().exists():
        config_path = str(default_config_path())

    if config_path:
        cfg = replace(cfg, config_path=str(config_path))
        cfg = apply_config_data(cfg, load_toml(str(config_path)))

    cfg = replace(cfg, listen_port=int(args.port))
    if args.host is not None:
        cfg = replace(cfg, listen_host=str(args.host))
    if args.queue_size is not None:
        cfg = replace(cfg, queue_size=int(args.queue_size))
    if args.handshake_timeout is not None:
        cfg = replace(cfg, handshake_timeout_s=float(args.handshake_timeout))
    if args.no_console:
        cfg = replace(cfg, console=False)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def _start_console(svc: RelayService) -> None:
    def handle(cmd: Command) -> bool:
        if cmd.kind == CMD_EXIT:
            svc.stop()
            return False
        return True

    threading.Thread(
        target=run_console,
        args=(sys.stdin, parse_server_line, handle),
        name="dmrelay-console",
        daemon=True,
    ).start()


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = _load_config(args)
    except (OSError, ValueError) as e:
        print(f"dmrelay: cannot load config: {e}", file=sys.stderr)
        raise SystemExit(2) from None

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)
    log = logging.getLogger("dmrelay.relay")

    svc = RelayService(cfg)
    try:
        svc.start()
    except OSError as e:
        log.error("Cannot listen on %s:%s: %s", cfg.listen_host, cfg.listen_port, e)
        raise SystemExit(1) from None

    if cfg.console:
        _start_console(svc)

    svc.run_forever()


def _build_client_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="dmrelay-client", description="Chat with other users through a dmrelay server"
    )
    p.add_argument("host", help="Relay server address")
    p.add_argument("port", type=_port, help="Relay server port")
    p.add_argument("username", help=f"Display name (at most {MAX_NAME_LEN} bytes)")
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    return p


def client_main(argv: list[str] | None = None) -> None:
    args = _build_client_arg_parser().parse_args(
        sys.argv[1:] if argv is None else argv
    )

    configure_client_logging(args.log_level)

    if not args.username or byte_len(args.username) > MAX_NAME_LEN:
        emit(fmt_error(f"Username cannot be more than {MAX_NAME_LEN} characters"))
        raise SystemExit(1)

    client = RelayClient(args.host, args.port, args.username)
    try:
        client.connect()
    except OSError as e:
        emit(fmt_error(f"Cannot connect to {args.host}:{args.port}: {e}"))
        raise SystemExit(1) from None

    emit(f"Connected with username {fmt_name(args.username)}")

    done = threading.Event()
    quitting = threading.Event()
    reason: list[str] = []

    def on_message(src: str, text: str) -> None:
        emit(f"{fmt_name(src)}: {fmt_message(text)}")

    def on_error(text: str) -> None:
        emit(fmt_error(text.rstrip("\n")))

    def receive() -> None:
        reason.append(client.listen(on_message, on_error))
        done.set()

    def handle(cmd: Command) -> bool:
        if cmd.kind == CMD_EXIT:
            quitting.set()
            done.set()
            return False
        if cmd.kind == CMD_SEND:
            try:
                client.send(cmd.to or "", cmd.body or "")
            except ValueError as e:
                emit(fmt_error(str(e)))
            except OSError as e:
                emit(fmt_error(f"Send failed: {e}"))
                done.set()
                return False
        return True

    def console() -> None:
        run_console(sys.stdin, parse_client_line, handle)
        quitting.set()
        done.set()

    threading.Thread(target=receive, name="dmrelay-client-rx", daemon=True).start()
    threading.Thread(target=console, name="dmrelay-client-console", daemon=True).start()

    try:
        done.wait()
    except KeyboardInterrupt:
        quitting.set()

    client.close()
    if reason and not quitting.is_set():
        emit(fmt_error(reason[0]))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
