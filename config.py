"""
config.py
---------
FhirMan — FHIR Patient CLI — Settings
-------------------------------------
Validated runtime settings for the CLI.

Every value has a compiled-in default so the CLI runs with no setup at all
against the public HAPI DSTU3 test server.  Defaults can be overridden, in
increasing order of precedence, by:

  1. a ``.env`` file (loaded with python-dotenv, never overriding variables
     already present in the real environment),
  2. environment variables,
  3. command-line options (see main.py).

Environment variables:
    FHIR_BASE_URL          FHIR server base URL
    FHIR_CONNECT_TIMEOUT   connection timeout, seconds
    FHIR_SOCKET_TIMEOUT    socket read timeout, seconds
    FHIRMAN_LOG_FILE       path of the append-only log file

Project: FhirMan — FHIR Patient CLI
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas import HumanName, Identifier, PatientRecord

logger = logging.getLogger(__name__)

# ── Defaults ──────────────────────────────────────────────────────────────────

DEFAULT_BASE_URL = "https://hapi.fhir.org/baseDstu3"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_LOG_FILE = "log.txt"
DEFAULT_SEARCH_NAME = "Fhirman"
DEFAULT_EVERYTHING_PATIENT_ID = "2834343"

# Australian Individual Healthcare Identifier namespace
IHI_SYSTEM = "http://ns.electronichealth.net.au/id/hi/ihi/1.0"
DEMO_IHI_VALUE = "8003608166690503"

LOGGER_NAME = "FHIR-LOGGER"

# FHIR logical id: 1-64 chars of [A-Za-z0-9-.]
_FHIR_ID_RE = re.compile(r"[A-Za-z0-9\-.]{1,64}")


def demo_patient() -> PatientRecord:
    """The demonstration Patient uploaded by ``-u``: Mr Sam Fhirman."""
    return PatientRecord(
        names=[HumanName(use="official", given=["Sam"], prefix=["Mr"], suffix=["Fhirman"])],
        identifiers=[Identifier(system=IHI_SYSTEM, value=DEMO_IHI_VALUE)],
    )


class Settings(BaseModel):
    """
    Runtime settings, validated at construction.

    Raises ``pydantic.ValidationError`` for a non-http(s) base URL,
    non-positive timeouts, an empty search name or a malformed patient id.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    base_url:              str   = DEFAULT_BASE_URL
    connect_timeout:       float = Field(default=DEFAULT_TIMEOUT_S, gt=0)
    socket_timeout:        float = Field(default=DEFAULT_TIMEOUT_S, gt=0)
    log_file_path:         str   = DEFAULT_LOG_FILE
    search_name:           str   = DEFAULT_SEARCH_NAME
    everything_patient_id: str   = DEFAULT_EVERYTHING_PATIENT_ID
    demo_patient:          PatientRecord = Field(default_factory=demo_patient)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got '{v}'.")
        return v.rstrip("/")

    @field_validator("log_file_path", "search_name")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty.")
        return v

    @field_validator("everything_patient_id")
    @classmethod
    def validate_patient_id(cls, v: str) -> str:
        if not _FHIR_ID_RE.fullmatch(v):
            raise ValueError(f"'{v}' is not a valid FHIR logical id.")
        return v

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from ``.env`` / environment variables over the defaults."""
        load_dotenv(env_file, override=False)
        values: dict[str, Any] = {}
        for key, env_var in (
            ("base_url", "FHIR_BASE_URL"),
            ("connect_timeout", "FHIR_CONNECT_TIMEOUT"),
            ("socket_timeout", "FHIR_SOCKET_TIMEOUT"),
            ("log_file_path", "FHIRMAN_LOG_FILE"),
        ):
            raw = os.getenv(env_var)
            if raw:
                values[key] = raw
        if values:
            logger.debug("Settings: environment overrides for %s", sorted(values))
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a re-validated copy with every non-None override applied."""
        update = {k: v for k, v in overrides.items() if v is not None}
        if not update:
            return self
        return type(self).model_validate({**self.model_dump(), **update})
