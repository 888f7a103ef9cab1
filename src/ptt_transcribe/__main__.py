import argparse
import asyncio
import logging
import signal
import sys

from ptt_transcribe.config import TranscribeConfig
from ptt_transcribe.domain.errors import ConfigurationError
from ptt_transcribe.domain.push_to_talk import PushToTalkCoordinator
from ptt_transcribe.log_format import configure_logging

CLIENT_COMMANDS = ("press", "release", "toggle", "status")


def main() -> None:
    parser = argparse.ArgumentParser(description="Push-to-talk microphone transcription via Deepgram")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("press", help="Start push-to-talk in the running daemon")
    subparsers.add_parser("release", help="Stop push-to-talk in the running daemon")
    subparsers.add_parser("toggle", help="Toggle push-to-talk in the running daemon")
    subparsers.add_parser("status", help="Query daemon status")
    subparsers.add_parser("devices", help="List audio input devices")

    args = parser.parse_args()

    try:
        config = TranscribeConfig()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    configure_logging(verbose=args.verbose, log_file=config.log_file)

    if args.command in CLIENT_COMMANDS:
        asyncio.run(_run_client_command(args.command, config))
    elif args.command == "devices":
        _print_devices()
    else:
        asyncio.run(_run_daemon(config))


def _print_devices() -> None:
    from ptt_transcribe.adapters.sounddevice_audio import list_input_devices

    devices = list_input_devices()
    if not devices:
        print("No input devices found", file=sys.stderr)
        sys.exit(1)
    for index, name, rate in devices:
        print(f"{index:>3}  {name}  ({rate} Hz)")


async def _run_client_command(action: str, config: TranscribeConfig) -> None:
    from ptt_transcribe.adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=config.socket_path)
    try:
        result = await client.send_command(action)
    except (ConnectionError, FileNotFoundError):
        print("ptt-transcribe daemon is not running", file=sys.stderr)
        sys.exit(1)

    print(f"{result}")
    if result.get("status") != "ok":
        sys.exit(1)


def dispatch_action(
    coordinator: PushToTalkCoordinator, action: str, pending: set[asyncio.Task]
) -> None:
    if action == "press" or (action == "toggle" and not coordinator.holding):
        task = asyncio.create_task(coordinator.activate())
        pending.add(task)
        task.add_done_callback(pending.discard)
    elif action in ("release", "toggle"):
        coordinator.deactivate()
    elif action == "status":
        logging.info("Status: %s", coordinator.snapshot())


async def _run_daemon(config: TranscribeConfig) -> None:
    from ptt_transcribe.adapters.unix_control import UnixSocketControlServer
    from ptt_transcribe.factory import create_coordinator
    from ptt_transcribe.health import has_critical_failures, run_startup_checks

    results = run_startup_checks(config)
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    def print_transcript(text: str) -> None:
        print(text, flush=True)

    def print_error(message: str) -> None:
        print(f"error: {message}", file=sys.stderr, flush=True)

    try:
        coordinator = create_coordinator(config, print_transcript, print_error)
    except ConfigurationError as exc:
        logging.error("%s", exc)
        sys.exit(1)

    control = UnixSocketControlServer(
        socket_path=config.socket_path, status_provider=coordinator.snapshot
    )
    pending: set[asyncio.Task] = set()
    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logging.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logging.info("Shutting down...")
        shutdown_event.set()

    def handle_stdin() -> None:
        line = sys.stdin.readline()
        if not line or line.strip().lower() == "q":
            loop.remove_reader(sys.stdin)
            shutdown_event.set()
            return
        dispatch_action(coordinator, "toggle", pending)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    stdin_attached = sys.stdin is not None and sys.stdin.isatty()
    if stdin_attached:
        loop.add_reader(sys.stdin, handle_stdin)
        logging.info("Press Enter to start/stop push-to-talk, 'q' + Enter to quit")

    await control.start()

    async def control_loop() -> None:
        async for cmd in control.commands():
            dispatch_action(coordinator, cmd.action, pending)

    control_task = asyncio.create_task(control_loop())

    try:
        await shutdown_event.wait()
    finally:
        if stdin_attached:
            loop.remove_reader(sys.stdin)
        control_task.cancel()
        try:
            await asyncio.wait_for(control_task, timeout=1.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        if pending:
            await asyncio.wait(pending, timeout=3.0)
        try:
            await asyncio.wait_for(coordinator.close(), timeout=5.0)
        except asyncio.TimeoutError:
            logging.warning("Session did not close within 5s")
        await control.stop()


if __name__ == "__main__":
    main()
