"""Client for the identity service, used to resolve the driver of a new ride."""

import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class IdentityClient:
    """Looks up the caller's profile; any failure degrades to ``None``."""

    def __init__(self, base_url: str, timeout: float = 3.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_profile(self, authorization: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.session.get(
                f"{self.base_url}/profiles/me",
                headers={"Authorization": authorization},
                timeout=self.timeout,
            )
            response.raise_for_status()
            profile = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Unable to resolve driver profile: {exc}")
            return None

        if not isinstance(profile, dict):
            logger.warning("Unable to resolve driver profile: unexpected payload")
            return None
        return profile


def driver_fields_from_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    """Map an identity profile onto the ride's driver columns."""
    return {
        "driver_id": profile.get("id"),
        "driver_label": (
            profile.get("fullName") or profile.get("companyName") or profile.get("email")
        ),
        "driver_photo_url": profile.get("profilePhotoUrl"),
    }
