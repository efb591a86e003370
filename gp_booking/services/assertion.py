"""
GP Connect access assertions.

Every call to a practice endpoint carries a short-lived JWT, signed with the
local system's private key, describing who is asking and why.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from jose import jwt
from jose.exceptions import JOSEError

from ..settings import Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ASSERTION_LIFETIME_SECONDS = 5 * 60
SIGNING_ALGORITHM = "RS512"

ASID_SYSTEM = "https://fhir.nhs.uk/Id/nhsSpineASID"
ODS_SYSTEM = "https://fhir.nhs.uk/Id/ods-organization-code"
SDS_USER_SYSTEM = "https://fhir.nhs.uk/Id/sds-user-id"


class AssertionGenerator:
    """Builds the bearer credential for a single GP Connect call."""

    def __init__(self, settings: Settings, clock: Optional[Callable[[], float]] = None):
        self.settings = settings
        self._clock = clock or time.time

    def build_claims(self, target_asid: str, endpoint: str) -> Dict[str, Any]:
        """
        Build the claim set for a call to a practice endpoint.

        Args:
            target_asid: ASID of the practice system being called
            endpoint: GP Connect endpoint URL of the practice

        Returns:
            JWT claim dictionary
        """
        issued_at = int(self._clock())
        local_asid = self.settings.nhs_asid

        return {
            "iss": local_asid,
            "sub": local_asid,
            "aud": endpoint,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
            "reason_for_request": "directcare",
            "requested_scope": "patient/*.read",
            "requesting_device": {
                "resourceType": "Device",
                "identifier": [{"system": ASID_SYSTEM, "value": local_asid}],
            },
            "requesting_organization": {
                "resourceType": "Organization",
                "identifier": [
                    {"system": ODS_SYSTEM, "value": self.settings.nhs_organization_code}
                ],
            },
            "requesting_practitioner": {
                "resourceType": "Practitioner",
                "identifier": [
                    {"system": SDS_USER_SYSTEM, "value": self.settings.nhs_user_id}
                ],
            },
        }

    def generate(self, target_asid: str, endpoint: str) -> str:
        """
        Generate the assertion for a call to a practice endpoint.

        Without a signing key a non-production deployment gets a placeholder
        token; production refuses.

        Raises:
            ConfigurationError: If the key is missing in production or malformed
        """
        if not self.settings.signing_key_configured:
            if self.settings.is_production:
                raise ConfigurationError(
                    "GP Connect signing key is required in production"
                )
            return f"demo-jwt-token-{int(self._clock() * 1000)}"

        claims = self.build_claims(target_asid, endpoint)
        private_key = self.settings.gp_connect_jwt_key.get_secret_value()

        try:
            return jwt.encode(claims, private_key, algorithm=SIGNING_ALGORITHM)
        except JOSEError as e:
            logger.error("Failed to sign GP Connect assertion: invalid signing key")
            raise ConfigurationError(f"Invalid GP Connect signing key: {e}") from e
