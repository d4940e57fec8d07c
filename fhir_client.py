"""
fhir_client.py
--------------
FhirMan — FHIR Patient CLI — FHIR DSTU3 REST Client
---------------------------------------------------
Synchronous FHIR client for the three interactions the CLI performs against
a FHIR server (by default the public HAPI DSTU3 test server):

    create     POST {base}/{type}                  (XML or JSON body)
    search     GET  {base}/{type}?param=value      (JSON Bundle back)
    operation  POST {base}/{type}/{id}/${name}     (empty Parameters in)

Resources are encoded and parsed with the ``fhir.resources`` STU3 models:
``create`` takes a model (or a resource dict, validated into one), sends
``model_dump_xml`` / ``model_dump_json`` output, and reads the returned
representation back with ``model_validate_xml`` / ``model_validate``.
Search and operation results stay plain JSON dicts.

Timeouts:
    Connection establishment and socket read are bounded separately
    (``connect_timeout`` / ``socket_timeout``, both 60 s by default).
    A timeout surfaces as ``FHIRAPIError`` with ``status_code == 0``.

Usage (context manager, preferred):
    with FHIRClient("https://hapi.fhir.org/baseDstu3") as client:
        bundle  = client.search("Patient", name="Fhirman")
        outcome = client.create(patient, encoding="xml", pretty=True)

Usage (manual lifecycle):
    client = FHIRClient()
    client.connect()
    params = client.operation("Patient", "2834343", "$everything")
    client.close()

Project: FhirMan — FHIR Patient CLI
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Union

import httpx
from fhir.resources.STU3 import get_fhir_model_class
from fhir.resources.STU3.resource import Resource

from config import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_S, Settings
from schemas import CreateOutcome

logger = logging.getLogger(__name__)

__all__ = [
    "FHIRClient",
    "FHIRClientError",
    "FHIRAPIError",
    "FHIRFormatError",
    "to_model",
    "to_xml",
]

# FHIR DSTU3 mime types, keyed by the encoding names accepted by create()
_MIME_TYPES = {
    "xml":  "application/fhir+xml",
    "json": "application/fhir+json",
}


class FHIRClientError(Exception):
    """Base class for errors raised while talking to the FHIR server."""


class FHIRAPIError(FHIRClientError):
    """
    Raised when a FHIR call fails at the HTTP level.

    ``status_code`` is the HTTP status of a non-2xx response, or ``0`` when
    no response was received (connection refused, DNS failure, timeout).
    """

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"FHIR API error {status_code}: {body}")


class FHIRFormatError(ValueError):
    """Raised when a resource cannot be encoded, or a response cannot be decoded."""


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def to_model(resource: Union[Resource, dict[str, Any]]) -> Resource:
    """
    Return *resource* as an STU3 model, validating a resource dict by its
    ``resourceType``.

    Raises:
        FHIRFormatError: no ``resourceType``, an unknown type, or content
                         the model rejects.
    """
    if isinstance(resource, Resource):
        return resource
    resource_type = resource.get("resourceType") if isinstance(resource, dict) else None
    if not resource_type:
        raise FHIRFormatError("Resource has no 'resourceType'; cannot encode it.")
    try:
        return get_fhir_model_class(resource_type).model_validate(resource)
    except Exception as exc:
        raise FHIRFormatError(f"Invalid {resource_type} resource: {exc}") from exc


def to_xml(resource: Resource, pretty: bool = True) -> str:
    """Serialise an STU3 model to FHIR XML text."""
    try:
        text = resource.model_dump_xml(pretty_print=pretty)
    except Exception as exc:
        raise FHIRFormatError(
            f"Could not encode {resource.get_resource_type()} as XML: {exc}"
        ) from exc
    return text.decode("utf-8") if isinstance(text, bytes) else text


def _to_json(resource: Resource, pretty: bool) -> str:
    try:
        text = resource.model_dump_json()
    except Exception as exc:
        raise FHIRFormatError(
            f"Could not encode {resource.get_resource_type()} as JSON: {exc}"
        ) from exc
    return json.dumps(json.loads(text), indent=2) if pretty else text


def _parse_location(location: str, resource_type: str) -> tuple[str, Optional[str]]:
    """
    Split a resource location into (logical_id, version_id).

    ``https://x/baseDstu3/Patient/123/_history/2`` → ``("123", "2")``
    """
    parts = [p for p in location.split("?", 1)[0].rstrip("/").split("/") if p]
    if resource_type not in parts:
        return "", None
    idx = len(parts) - 1 - parts[::-1].index(resource_type)
    logical_id = parts[idx + 1] if idx + 1 < len(parts) else ""
    version_id = None
    if idx + 3 < len(parts) and parts[idx + 2] == "_history":
        version_id = parts[idx + 3]
    return logical_id, version_id


class FHIRClient:
    """
    Synchronous FHIR REST client over ``httpx.Client``.

    Args:
        base_url:        FHIR server base URL (no trailing slash needed).
        connect_timeout: Seconds allowed to establish a connection.
        socket_timeout:  Seconds allowed between bytes on the socket
                         (also applied to writes and pool acquisition).
        transport:       Optional ``httpx`` transport; tests pass an
                         ``httpx.MockTransport`` here.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        connect_timeout: float = DEFAULT_TIMEOUT_S,
        socket_timeout: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(socket_timeout, connect=connect_timeout)
        self._transport = transport
        self._http: Optional[httpx.Client] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None
    ) -> "FHIRClient":
        return cls(
            base_url=settings.base_url,
            connect_timeout=settings.connect_timeout,
            socket_timeout=settings.socket_timeout,
            transport=transport,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.Client(timeout=self.timeout, transport=self._transport)
            logger.debug("FHIRClient: HTTP transport initialised (base=%s).", self.base_url)

    def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            self._http.close()
            self._http = None
            logger.debug("FHIRClient: HTTP transport closed.")

    def __enter__(self) -> "FHIRClient":
        self.connect()
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    # ── Internal request helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        content: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request and return the response.

        Raises:
            RuntimeError:  if ``connect()`` / ``__enter__`` was not called.
            FHIRAPIError:  on transport failure or a non-2xx status code.
        """
        if self._http is None:
            raise RuntimeError(
                "FHIRClient is not connected. "
                "Use 'with FHIRClient() as client:' or call connect() first."
            )

        url = f"{self.base_url}{path}"
        try:
            resp = self._http.request(
                method, url, params=params, content=content, headers=headers
            )
        except httpx.HTTPError as exc:
            raise FHIRAPIError(0, str(exc)) from exc

        logger.debug("FHIRClient: %s %s → %d", method, resp.request.url, resp.status_code)
        if resp.status_code not in range(200, 300):
            raise FHIRAPIError(resp.status_code, resp.text)
        return resp

    @staticmethod
    def _decode_json(resp: httpx.Response) -> dict[str, Any]:
        """
        Decode a JSON response body into a resource dict (``{}`` when empty).

        Raises:
            FHIRFormatError: if the body is not a JSON object.
        """
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            content_type = resp.headers.get("Content-Type", "")
            raise FHIRFormatError(
                f"Response body is not valid JSON ({content_type or 'no content type'})."
            ) from exc
        if not isinstance(body, dict):
            raise FHIRFormatError("Response body is not a FHIR resource object.")
        return body

    def _decode_returned(self, resp: httpx.Response, resource_type: str) -> Optional[Resource]:
        """
        Read the representation returned by a create as a *resource_type*
        model.  Returns None for an empty body or a body holding some other
        resource (typically an OperationOutcome).
        """
        if not resp.content:
            return None
        model_class = get_fhir_model_class(resource_type)
        try:
            if "xml" in resp.headers.get("Content-Type", ""):
                return model_class.model_validate_xml(resp.content)
            body = self._decode_json(resp)
            if body.get("resourceType") != resource_type:
                return None
            return model_class.model_validate(body)
        except Exception as exc:
            logger.warning(
                "FHIRClient: returned body is not a readable %s (%s); ignoring it.",
                resource_type, exc,
            )
            return None

    # ── FHIR interactions ────────────────────────────────────────────────────

    def create(
        self,
        resource: Union[Resource, dict[str, Any]],
        encoding: str = "xml",
        pretty: bool = True,
    ) -> CreateOutcome:
        """
        Create a resource  →  ``POST {base}/{resourceType}``.

        Args:
            resource: STU3 model, or a resource dict with a ``resourceType``.
            encoding: ``"xml"`` or ``"json"``; body and ``Accept`` format.
            pretty:   Ask for (and send) pretty-printed content
                      (``_pretty=true``).

        Returns:
            ``CreateOutcome`` with the server-assigned location and the
            returned resource model when the server sends one back.

        Raises:
            FHIRFormatError: if the resource cannot be encoded or the server
                             reports no id.
            FHIRAPIError:    if the server rejects the request.
        """
        if encoding not in _MIME_TYPES:
            raise FHIRFormatError(
                f"Unsupported encoding '{encoding}'; expected one of {sorted(_MIME_TYPES)}."
            )
        model = to_model(resource)
        resource_type = model.get_resource_type()
        body = to_xml(model, pretty=pretty) if encoding == "xml" else _to_json(model, pretty)

        mime = _MIME_TYPES[encoding]
        headers = {
            "Content-Type": f"{mime};charset=utf-8",
            "Accept": mime,
            "Prefer": "return=representation",
        }
        logger.debug("FHIRClient: POST /%s (%s, pretty=%s)", resource_type, encoding, pretty)
        resp = self._request(
            "POST",
            f"/{resource_type}",
            params={"_pretty": "true"} if pretty else None,
            content=body,
            headers=headers,
        )

        returned = self._decode_returned(resp, resource_type)
        location = resp.headers.get("Location") or resp.headers.get("Content-Location")
        if location:
            logical_id, version_id = _parse_location(location, resource_type)
        else:
            logical_id = (returned.id if returned else None) or ""
            version_id = returned.meta.versionId if returned and returned.meta else None
            if not logical_id:
                raise FHIRFormatError(
                    f"Server created the {resource_type} but reported no id "
                    "(no Location header and no id in the body)."
                )
            location = f"{self.base_url}/{resource_type}/{logical_id}"
            if version_id:
                location += f"/_history/{version_id}"

        logger.info("FHIRClient: created %s at %s", resource_type, location)
        return CreateOutcome(
            location=location,
            logical_id=logical_id or (returned.id if returned else None) or "",
            version_id=version_id,
            resource=returned,
        )

    def search(self, resource_type: str, **search_params: str) -> dict[str, Any]:
        """
        Search resources  →  ``GET {base}/{resourceType}?…``.

        Keyword arguments are forwarded as FHIR search parameters, e.g.
        ``client.search("Patient", name="Fhirman")``.

        Returns:
            The search-set ``Bundle`` (dict).

        Raises:
            FHIRAPIError:    on transport failure or non-2xx status.
            FHIRFormatError: if the response is not a JSON Bundle.
        """
        logger.debug(
            "FHIRClient: GET /%s params=%s", resource_type, search_params or "<all>"
        )
        resp = self._request(
            "GET",
            f"/{resource_type}",
            params=search_params or None,
            headers={"Accept": _MIME_TYPES["json"]},
        )
        bundle = self._decode_json(resp)
        if bundle.get("resourceType") != "Bundle":
            raise FHIRFormatError(
                f"Search returned '{bundle.get('resourceType')}' instead of a Bundle."
            )
        return bundle

    def operation(
        self,
        resource_type: str,
        instance_id: str,
        name: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Invoke an instance-level operation
        →  ``POST {base}/{resourceType}/{id}/${name}``.

        Args:
            resource_type: e.g. ``"Patient"``.
            instance_id:   Logical id of the target resource.
            name:          Operation name, with or without the leading ``$``.
            parameters:    Input ``Parameters`` resource; an empty one is sent
                           when omitted.

        Returns:
            Output ``Parameters`` (dict).  When the server answers with a
            bare resource (as ``$everything`` does with a Bundle) it is
            wrapped as the single ``return`` parameter.

        Raises:
            FHIRAPIError:    on transport failure or non-2xx status.
            FHIRFormatError: if the response cannot be decoded.
        """
        op = name if name.startswith("$") else f"${name}"
        body = parameters or {"resourceType": "Parameters"}
        logger.debug("FHIRClient: POST /%s/%s/%s", resource_type, instance_id, op)
        resp = self._request(
            "POST",
            f"/{resource_type}/{instance_id}/{op}",
            content=json.dumps(body),
            headers={
                "Content-Type": f"{_MIME_TYPES['json']};charset=utf-8",
                "Accept": _MIME_TYPES["json"],
            },
        )
        result = self._decode_json(resp)
        if result.get("resourceType") == "Parameters":
            return result
        return {
            "resourceType": "Parameters",
            "parameter": [{"name": "return", "resource": result}],
        }
