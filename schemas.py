"""
schemas.py
----------
FhirMan — FHIR Patient CLI — Pydantic Data Contracts
----------------------------------------------------
Pydantic v2 models shared by the FHIR adapter, the command handlers and the
CLI entry point.

Only the slice of the FHIR DSTU3 object model the CLI needs is modelled:

    HumanName / Identifier / PatientRecord
        The demonstration Patient built locally before an upload.
        ``PatientRecord.to_fhir()`` produces the resource dict;
        ``to_resource()`` validates it into the ``fhir.resources`` STU3
        ``Patient`` model that the client encodes.

    SearchResult / OperationResult
        Read-only views over the Bundles returned by a name search and by
        the ``$everything`` operation.  Server order is preserved.

    CreateOutcome
        What the server told us after a create: the resolvable location,
        the logical / version ids and the returned resource (if any).

    CommandResult
        Uniform success / failure value returned by every command handler.
        The entry point decides what to log and which exit code to use.

Validation policy
-----------------
Values supplied by configuration (names, identifier system URIs, ids) are
validated at construction; a bad value raises ``pydantic.ValidationError``
at the boundary instead of surfacing later as a server-side 400.

Project: FhirMan — FHIR Patient CLI
"""

from __future__ import annotations

from typing import Any, Literal, Optional
from urllib.parse import urlparse

from fhir.resources.STU3.patient import Patient
from pydantic import BaseModel, ConfigDict, Field, field_validator


# FHIR DSTU3 HumanName.use value set
NameUse = Literal["usual", "official", "temp", "nickname", "anonymous", "old", "maiden"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def logical_id_of(resource: dict[str, Any], full_url: str = "") -> str:
    """
    Return the logical id of *resource*.

    Falls back to the id part of the Bundle entry ``fullUrl``
    (``…/Patient/123`` → ``"123"``) when the resource carries no ``id``.
    """
    rid = (resource or {}).get("id")
    if rid:
        return str(rid)
    if full_url:
        parts = [p for p in full_url.rstrip("/").split("/") if p]
        if "_history" in parts:
            parts = parts[: parts.index("_history")]
        if parts:
            return parts[-1]
    return ""


def bundle_entries(bundle: dict[str, Any]) -> list[tuple[dict[str, Any], str]]:
    """
    Return ``(resource, fullUrl)`` for every entry of *bundle*, in order.

    A missing or null ``entry`` reads as an empty Bundle.

    Raises:
        ValueError: if ``entry`` is not a list, or an entry carries no
                    resource object.
    """
    entries = bundle.get("entry") or []
    if not isinstance(entries, list):
        raise ValueError(f"Bundle 'entry' is not a list (got {type(entries).__name__}).")
    pairs = []
    for pos, entry in enumerate(entries):
        resource = entry.get("resource") if isinstance(entry, dict) else None
        if not isinstance(resource, dict):
            raise ValueError(f"Bundle entry {pos} carries no resource.")
        pairs.append((resource, entry.get("fullUrl") or ""))
    return pairs


# ---------------------------------------------------------------------------
# PatientRecord — the resource built before an upload
# ---------------------------------------------------------------------------

class HumanName(BaseModel):
    """A FHIR ``HumanName`` element."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    use:    NameUse       = "official"
    family: Optional[str] = None
    given:  list[str]     = Field(default_factory=list)
    prefix: list[str]     = Field(default_factory=list)
    suffix: list[str]     = Field(default_factory=list)

    def to_fhir(self) -> dict[str, Any]:
        # DSTU3 element order: use, text, family, given, prefix, suffix
        out: dict[str, Any] = {"use": self.use}
        if self.family:
            out["family"] = self.family
        for key in ("given", "prefix", "suffix"):
            values = [v for v in getattr(self, key) if v]
            if values:
                out[key] = values
        return out


class Identifier(BaseModel):
    """A FHIR ``Identifier`` element: a value scoped by a system URI."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    system: str
    value:  str

    @field_validator("system")
    @classmethod
    def validate_system(cls, v: str) -> str:
        """Identifier systems must be absolute URIs (``http:``, ``urn:`` …)."""
        parsed = urlparse(v)
        if not parsed.scheme or not (parsed.netloc or parsed.path):
            raise ValueError(f"identifier system must be an absolute URI, got '{v}'.")
        return v

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: str) -> str:
        if not v:
            raise ValueError("identifier value must not be empty.")
        return v

    def to_fhir(self) -> dict[str, Any]:
        return {"system": self.system, "value": self.value}


class PatientRecord(BaseModel):
    """
    Locally built Patient: one or more names and one or more identifiers.

    Owned by the upload handler until it is handed to the adapter; the
    server is the system of record, nothing is persisted locally.
    """

    model_config = ConfigDict(extra="forbid")

    names:       list[HumanName]  = Field(min_length=1)
    identifiers: list[Identifier] = Field(min_length=1)

    def to_fhir(self) -> dict[str, Any]:
        """Serialise to a FHIR ``Patient`` resource dict (element order kept)."""
        return {
            "resourceType": "Patient",
            "identifier": [i.to_fhir() for i in self.identifiers],
            "name": [n.to_fhir() for n in self.names],
        }

    def to_resource(self) -> Patient:
        """Validate into the STU3 ``Patient`` model sent by the client."""
        return Patient.model_validate(self.to_fhir())


# ---------------------------------------------------------------------------
# Results read back from the server
# ---------------------------------------------------------------------------

class SearchResult(BaseModel):
    """Logical ids returned by a search, in server order."""

    ids:   list[str] = Field(default_factory=list)
    total: Optional[int] = None

    @classmethod
    def from_bundle(cls, bundle: dict[str, Any]) -> "SearchResult":
        if bundle.get("resourceType") != "Bundle":
            raise ValueError(
                f"Expected a Bundle from search, got '{bundle.get('resourceType')}'."
            )
        ids = [logical_id_of(res, full_url) for res, full_url in bundle_entries(bundle)]
        return cls(ids=ids, total=bundle.get("total"))


class ResourceRef(BaseModel):
    resource_type: str
    id:            str

    def __str__(self) -> str:
        return f"{self.resource_type}/{self.id}"


class OperationResult(BaseModel):
    """Bundle carried by the first output parameter of an operation."""

    total:     int = 0
    resources: list[ResourceRef] = Field(default_factory=list)

    @classmethod
    def from_parameters(cls, parameters: dict[str, Any]) -> "OperationResult":
        """
        Read the Bundle out of ``Parameters.parameter[0].resource``.

        Raises:
            ValueError: if there is no first parameter or it does not carry
                        a Bundle.
        """
        params = parameters.get("parameter") or []
        if not params:
            raise ValueError("Operation returned no output parameters.")
        first = params[0] if isinstance(params[0], dict) else {}
        bundle = first.get("resource") or {}
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            raise ValueError("First output parameter does not carry a Bundle.")
        refs = [
            ResourceRef(
                resource_type=res.get("resourceType") or "Unknown",
                id=logical_id_of(res, full_url),
            )
            for res, full_url in bundle_entries(bundle)
        ]
        return cls(total=int(bundle.get("total") or 0), resources=refs)


class CreateOutcome(BaseModel):
    """
    Result of a create call.

    ``location`` is the resolvable id the server assigned, e.g.
    ``https://hapi.fhir.org/baseDstu3/Patient/123/_history/1``.
    ``resource`` is the returned STU3 model, when the server sent one.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    location:   str
    logical_id: str = ""
    version_id: Optional[str] = None
    resource:   Any = None


# ---------------------------------------------------------------------------
# CommandResult — uniform handler outcome
# ---------------------------------------------------------------------------

class CommandResult(BaseModel):
    """Success / failure value returned by every command handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    command: str
    success: bool
    message: str = ""
    error:   Optional[str] = None
    data:    Any = None

    @classmethod
    def ok(cls, command: str, message: str = "", data: Any = None) -> "CommandResult":
        return cls(command=command, success=True, message=message, data=data)

    @classmethod
    def failed(cls, command: str, exc: BaseException, message: str = "") -> "CommandResult":
        return cls(
            command=command,
            success=False,
            message=message,
            error=f"{type(exc).__name__}: {exc}",
        )
