"""
main.py
-------
FhirMan — FHIR Patient CLI — Entry point
----------------------------------------
Routes the first command-line token to one command handler:

    -u    create the demonstration Patient (XML, pretty-printed)
    -s    search Patients named "Fhirman"
    -o    invoke $everything on Patient 2834343

Options accepted after the command flag:

    --base-url URL      FHIR server base URL
    --name NAME         name to search for (-s)
    --patient-id ID     Patient id for $everything (-o)
    --log-file PATH     append-only log file
    --verbose           DEBUG logging

No argument logs a warning and does nothing.  An unrecognised first token
logs a warning and does nothing.  The process always exits 0: a failed
command is logged, never turned into a crash or a non-zero status.

Usage:
    python main.py -s
    python main.py -u --base-url http://localhost:8080/fhir
    python main.py -o --patient-id 2834343

Project: FhirMan — FHIR Patient CLI
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, Optional, Sequence

import httpx
from pydantic import ValidationError

from config import LOGGER_NAME, Settings
from fhir_client import FHIRClient
from file_log import LogFileWriter
from handlers import ClientContext, run_everything, search_patients, upload_patient
from schemas import CommandResult

logger = logging.getLogger(LOGGER_NAME)

COMMANDS: dict[str, Callable[[ClientContext], CommandResult]] = {
    "-u": upload_patient,
    "-s": search_patients,
    "-o": run_everything,
}

USAGE_HINT = "Please add a command-line argument (-u for upload, -s for search or -o for $everything)"


# ── Logging ───────────────────────────────────────────────────────────────────

def configure_logging(verbose: bool = False) -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s [%(name)s] %(message)s",
    )
    # httpx logs every request at INFO; keep that for --verbose only
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ── CLI ───────────────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fhirman",
        description="Minimal FHIR Patient client: -u upload, -s search, -o $everything.",
        add_help=False,
        exit_on_error=False,
    )
    parser.add_argument("--base-url", metavar="URL", help="FHIR server base URL.")
    parser.add_argument("--name", metavar="NAME", help="Patient name to search for (-s).")
    parser.add_argument("--patient-id", metavar="ID", help="Patient id for $everything (-o).")
    parser.add_argument("--log-file", metavar="PATH", help="Append-only log file path.")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging.")
    return parser


def _verbose_requested(argv: Sequence[str]) -> bool:
    """True only when a known command flag is followed by --verbose."""
    if not argv or argv[0] not in COMMANDS:
        return False
    try:
        opts, _ = _build_parser().parse_known_args(list(argv[1:]))
    except argparse.ArgumentError:
        return False
    return opts.verbose


def dispatch(
    argv: Sequence[str],
    settings: Optional[Settings] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> Optional[CommandResult]:
    """
    Run the command named by ``argv[0]``.

    Args:
        argv:      Command-line arguments without the program name.
        settings:  Base settings; ``Settings.from_env()`` when omitted.
        transport: Optional httpx transport handed to the FHIR client.

    Returns:
        The handler's ``CommandResult``, a failed result when configuration
        is invalid, or None when no command ran (no / unknown argument).
    """
    if not argv:
        logger.warning(USAGE_HINT)
        return None

    handler = COMMANDS.get(argv[0])
    if handler is None:
        logger.warning("Unrecognised command '%s' ignored. %s", argv[0], USAGE_HINT)
        return None

    command = argv[0]
    try:
        opts, extras = _build_parser().parse_known_args(list(argv[1:]))
    except argparse.ArgumentError as exc:
        logger.error("Invalid options for %s: %s", command, exc)
        return CommandResult.failed(command, exc, message="Invalid options.")
    if extras:
        logger.warning("Ignoring unrecognised arguments: %s", " ".join(extras))

    try:
        settings = (settings or Settings.from_env()).with_overrides(
            base_url=opts.base_url,
            search_name=opts.name,
            everything_patient_id=opts.patient_id,
            log_file_path=opts.log_file,
        )
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return CommandResult.failed(command, exc, message="Invalid configuration.")

    with FHIRClient.from_settings(settings, transport=transport) as client:
        ctx = ClientContext(
            settings=settings,
            client=client,
            logger=logger,
            write_log=LogFileWriter(settings.log_file_path),
        )
        return handler(ctx)


def main(argv: Optional[list[str]] = None) -> int:
    """Console entry point; always returns 0."""
    argv = sys.argv[1:] if argv is None else list(argv)
    configure_logging(verbose=_verbose_requested(argv))

    result = dispatch(argv)
    if result is not None and not result.success:
        logger.info("Command %s did not complete: %s", result.command, result.error)
    return 0


if __name__ == "__main__":
    sys.exit(main())
