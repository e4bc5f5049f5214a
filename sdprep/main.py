import argparse
import asyncio
import contextlib
import signal
import sys

from sdprep.config import settings
from sdprep.domain.models import JobEvent, JobState, SafetyClass
from sdprep.logging import LoggerFactory, setup_logging
from sdprep.services.drives import DeviceInventory, list_candidates
from sdprep.services.jobs import build_orchestrator
from sdprep.storage.devices import human_size
from sdprep.storage.exceptions import ConfirmationMismatchError, StorageError
from sdprep.storage.runner import privilege_available

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sdprep",
        description="Prepare SD cards and USB sticks: FAT32 data partition plus a raw reserved tail",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable very verbose trace output")
    subparsers = parser.add_subparsers(dest="command")

    policy_parent = argparse.ArgumentParser(add_help=False)
    policy_parent.add_argument(
        "--no-restrict",
        action="store_true",
        help="Allow devices of 1 TiB and above",
    )
    policy_parent.add_argument(
        "--sd-only",
        action="store_true",
        help="Only offer SD slots and USB card readers",
    )

    list_parser = subparsers.add_parser(
        "list", parents=[policy_parent], help="List format candidates"
    )
    list_parser.add_argument(
        "--all", action="store_true", help="Also show rejected devices and why"
    )

    format_parser = subparsers.add_parser(
        "format", parents=[policy_parent], help="Erase and format a device"
    )
    format_parser.add_argument("device", help="Device to format, e.g. mmcblk0 or /dev/sdb")
    format_parser.add_argument("--label", help="FAT volume label (max 11 characters)")
    format_parser.add_argument(
        "--yes", action="store_true", help="Skip the yes/no prompt for SAFE devices"
    )
    format_parser.add_argument(
        "--confirm-path",
        metavar="PATH",
        help="Device path retyped up front, for CAUTION devices",
    )

    serve_parser = subparsers.add_parser(
        "serve", parents=[policy_parent], help="Run the JSON/WebSocket API"
    )
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser


def _policy_from_args(args):
    return settings.load_risk_policy(
        restrict_mode=False if args.no_restrict else None,
        sd_only=True if args.sd_only else None,
    )


def cmd_list(args, inventory=None):
    inventory = inventory or DeviceInventory()
    snapshot = inventory.refresh()
    if snapshot.last_error is not None:
        print(f"Cannot read block devices: {snapshot.last_error}", file=sys.stderr)
        return EXIT_FAILED
    results = list_candidates(
        _policy_from_args(args),
        include_rejected=args.all,
        inventory=inventory,
        refresh=False,
    )
    if not results:
        print("No candidate devices found.")
        return EXIT_OK
    for result in results:
        line = f"[{result.safety_class.grade}] {result.description}"
        if result.reject_reason is not None:
            line += f"  ({result.reject_reason.value})"
        print(line)
    return EXIT_OK


def _print_event(event: JobEvent):
    if event.kind == "log" and event.line is not None:
        print(f"  {event.line}")
    elif event.kind == "state" and event.state.is_working:
        print(f"[{event.state.value}] {event.step or ''}".rstrip())


def _ask(prompt):
    try:
        return input(prompt)
    except EOFError:
        return None


async def _confirm(orchestrator, args, job):
    """Return the typed path (or "") when the operator confirms, else None."""
    device = job.target
    print(f"ALL DATA ON {device.path} WILL BE ERASED")
    print(f"  {job.target.model or 'Removable'}, {human_size(device.size_bytes)}")
    for line in job.plan.describe():
        print(f"  {line}")
    print(f"  Label: {job.volume_label}")

    if job.safety_class is SafetyClass.CAUTION and orchestrator.policy.require_retype_for_caution:
        if args.confirm_path is not None:
            return args.confirm_path
        print("This device is not a typical SD/USB target.")
        return await asyncio.to_thread(_ask, f"Type {device.path} to continue: ")
    if args.yes:
        return ""
    answer = await asyncio.to_thread(_ask, "Type YES to continue: ")
    if answer is None or answer.strip() != "YES":
        return None
    return ""


async def run_format(args, orchestrator):
    try:
        job = await orchestrator.request_format(args.device, args.label)
    except StorageError as error:
        print(f"Refusing to format: {error}", file=sys.stderr)
        return EXIT_REJECTED

    typed_path = await _confirm(orchestrator, args, job)
    if typed_path is None:
        orchestrator.decline()
        print("Nothing was changed.")
        return EXIT_OK
    try:
        orchestrator.proceed(typed_path)
    except ConfirmationMismatchError as error:
        orchestrator.decline()
        print(f"Refusing to format: {error}", file=sys.stderr)
        return EXIT_REJECTED

    loop = asyncio.get_running_loop()
    unsubscribe = orchestrator.subscribe(_print_event)
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    try:
        job = await orchestrator.wait()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        unsubscribe()

    print(job.status_message)
    if job.state is JobState.FAILED:
        if job.failure is not None:
            print(
                f"Failed step: {job.failure.step}: {' '.join(job.failure.command)} "
                f"(exit code {job.failure.returncode})",
                file=sys.stderr,
            )
        return EXIT_FAILED
    return EXIT_OK


def cmd_format(args):
    orchestrator = build_orchestrator(_policy_from_args(args))
    return asyncio.run(run_format(args, orchestrator))


def cmd_serve(args):
    from sdprep.web.server import run_server

    run_server(host=args.host, port=args.port, policy=_policy_from_args(args))
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()

    if args.command is None:
        parser.print_help()
        return EXIT_REJECTED

    if args.command in ("format", "serve") and not privilege_available():
        log.warning("Not running as root and pkexec is missing; formatting will fail")

    handlers = {"list": cmd_list, "format": cmd_format, "serve": cmd_serve}
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
