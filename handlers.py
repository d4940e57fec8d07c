"""
handlers.py
-----------
FhirMan — FHIR Patient CLI — Command handlers
---------------------------------------------
One handler per CLI command.  Each builds a request against the FHIR client,
interprets the response, writes console / log output, and returns a
``CommandResult``.  Handlers never raise: any failure while calling the
server or reading its answer is logged and reported in the result, and the
caller decides what to do with it.

    search_patients  -s   Patient?name=<name>; prints the count and the
                          logical ids in server order.
    upload_patient   -u   creates the demonstration Patient as pretty XML;
                          logs sent vs received XML and appends the
                          resource location to the log file.
    run_everything   -o   Patient/<id>/$everything; prints the total and
                          logs Type/id for every resource in the Bundle.

Everything a handler needs travels in a ``ClientContext``; there is no
module-level client or logger state.

Project: FhirMan — FHIR Patient CLI
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from config import Settings
from fhir_client import FHIRClient, to_xml
from schemas import CommandResult, OperationResult, PatientRecord, SearchResult

EVERYTHING_OPERATION = "$everything"


@dataclass
class ClientContext:
    """Per-run dependencies handed to every handler."""

    settings:  Settings
    client:    FHIRClient
    logger:    logging.Logger
    write_log: Callable[[str], bool]


# ── -s : search ───────────────────────────────────────────────────────────────

def search_patients(ctx: ClientContext, name: Optional[str] = None) -> CommandResult:
    """Search Patients whose name matches *name* (default: settings.search_name)."""
    name = name or ctx.settings.search_name
    try:
        bundle = ctx.client.search("Patient", name=name)
        result = SearchResult.from_bundle(bundle)
    except Exception as exc:
        print("An error occurred trying to search:")
        ctx.logger.error("Search for Patient name=%r failed.", name, exc_info=True)
        return CommandResult.failed("search", exc, message="Search failed.")

    print(f"Found {len(result.ids)} patients. Their logical IDs are:")
    for logical_id in result.ids:
        print(logical_id)
    return CommandResult.ok(
        "search", message=f"Found {len(result.ids)} patients.", data=result
    )


# ── -u : create ───────────────────────────────────────────────────────────────

def upload_patient(ctx: ClientContext, patient: Optional[PatientRecord] = None) -> CommandResult:
    """
    Create *patient* (default: the configured demonstration Patient) as
    pretty-printed XML.  Single attempt; a failed create is never retried.
    """
    patient = patient or ctx.settings.demo_patient
    try:
        resource = patient.to_resource()
        outcome = ctx.client.create(resource, encoding="xml", pretty=True)
        sent_xml = to_xml(resource, pretty=True)
        if outcome.resource is not None:
            received_xml = to_xml(outcome.resource, pretty=True)
        else:
            received_xml = "(the server returned no resource body)"
    except ValueError as exc:  # FHIRFormatError, pydantic.ValidationError
        ctx.logger.error("An error occurred trying to upload:", exc_info=True)
        return CommandResult.failed("upload", exc, message="Upload failed: bad resource format.")
    except Exception as exc:
        ctx.logger.error("An error occurred trying to upload:", exc_info=True)
        return CommandResult.failed("upload", exc, message="Upload failed.")

    ctx.logger.info(
        "This is what we sent up: \n%s\n\nThis is what we received: \n%s",
        sent_xml,
        received_xml,
    )
    ctx.write_log(f"Resource is available at: {outcome.location}")
    return CommandResult.ok(
        "upload", message=f"Created {outcome.location}", data=outcome
    )


# ── -o : $everything ──────────────────────────────────────────────────────────

def run_everything(ctx: ClientContext, patient_id: Optional[str] = None) -> CommandResult:
    """
    Invoke ``$everything`` on Patient *patient_id* (default:
    settings.everything_patient_id) with no input parameters.
    """
    patient_id = patient_id or ctx.settings.everything_patient_id
    try:
        out_params = ctx.client.operation("Patient", patient_id, EVERYTHING_OPERATION)
        result = OperationResult.from_parameters(out_params)
    except Exception as exc:
        ctx.logger.error("An error occurred trying to operate:", exc_info=True)
        return CommandResult.failed("everything", exc, message="$everything failed.")

    print(f"Received {result.total} results. The resources are:")
    for ref in result.resources:
        ctx.logger.info("%s", ref)
    return CommandResult.ok(
        "everything", message=f"Received {result.total} results.", data=result
    )
