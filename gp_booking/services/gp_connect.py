"""
GP Connect FHIR client.

Issues the slot search and appointment create interactions against a
practice's GP Connect endpoint. Calls are made once; there is no retry.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..settings import Settings
from .errors import ExternalCallError
from .models import PracticeRecord

logger = logging.getLogger(__name__)

SEARCH_SLOT_INTERACTION = "urn:nhs:names:services:gpconnect:fhir:rest:search:slot-1"
CREATE_APPOINTMENT_INTERACTION = (
    "urn:nhs:names:services:gpconnect:fhir:rest:create:appointment-1"
)
FHIR_JSON = "application/fhir+json"


class GPConnectClient:
    """Client for the GP Connect interactions used by the booking flow."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            settings: Application settings
            transport: Optional httpx transport (tests inject a mock)
        """
        self.settings = settings
        self._transport = transport

    def _build_headers(
        self, practice: PracticeRecord, token: str, interaction: str, trace_id: str
    ) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
            "Ssp-TraceID": trace_id,
            "Ssp-From": self.settings.nhs_asid,
            "Ssp-To": practice.asid,
            "Ssp-InteractionID": interaction,
        }

    async def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Optional[List[Tuple[str, str]]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a single GP Connect request and decode the FHIR JSON body."""
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.gp_connect_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method, url, headers=headers, params=params, json=json
                )
        except httpx.TimeoutException as e:
            raise ExternalCallError(f"GP Connect request timed out: {method} {url}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ExternalCallError(f"GP Connect request failed: {e}") from e

        if response.status_code >= 400:
            raise ExternalCallError(
                f"GP Connect {method} {url} returned {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalCallError(
                "GP Connect returned a body that is not JSON",
                status_code=response.status_code,
            ) from e

        if not isinstance(body, dict):
            raise ExternalCallError(
                "GP Connect returned an unexpected JSON document",
                status_code=response.status_code,
            )
        return body

    async def search_free_slots(
        self,
        practice: PracticeRecord,
        token: str,
        from_date: str,
        to_date: str,
        trace_id: str,
    ) -> Dict[str, Any]:
        """
        Search a practice for free slots in a date range.

        Returns:
            The FHIR searchset Bundle

        Raises:
            ExternalCallError: On network failure, non-2xx, or a malformed body
        """
        params = [
            ("start", f"ge{from_date}"),
            ("end", f"le{to_date}"),
            ("status", "free"),
            ("_include", "Slot:schedule"),
            ("_include:recurse", "Schedule:actor:Practitioner"),
        ]
        headers = self._build_headers(
            practice, token, SEARCH_SLOT_INTERACTION, trace_id
        )

        bundle = await self._request(
            "GET", f"{practice.endpoint.rstrip('/')}/Slot", headers, params=params
        )
        if bundle and bundle.get("resourceType") != "Bundle":
            raise ExternalCallError(
                f"Expected Bundle, got {bundle.get('resourceType')}"
            )
        return bundle

    async def create_appointment(
        self,
        practice: PracticeRecord,
        token: str,
        resource: Dict[str, Any],
        trace_id: str,
    ) -> Dict[str, Any]:
        """
        Create an Appointment at a practice.

        Returns:
            The created Appointment resource, or an empty dict when the
            practice returns no body

        Raises:
            ExternalCallError: On network failure, non-2xx, or a malformed body
        """
        headers = self._build_headers(
            practice, token, CREATE_APPOINTMENT_INTERACTION, trace_id
        )
        return await self._request(
            "POST",
            f"{practice.endpoint.rstrip('/')}/Appointment",
            headers,
            json=resource,
        )
