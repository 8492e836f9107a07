"""Read-only client for the headless CMS (Sanity) that holds course and event
structure: modules, lessons, drip settings and membership-tier gating."""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SANITY_PROJECT_ID = os.environ.get("SANITY_PROJECT_ID", "")
SANITY_DATASET = os.environ.get("SANITY_DATASET", "production")
SANITY_API_VERSION = os.environ.get("SANITY_API_VERSION", "2023-05-03")
SANITY_TOKEN = os.environ.get("SANITY_TOKEN", "")

COURSE_ACCESS_QUERY = """
*[_type == "course" && _id == $id][0] {
  _id,
  price,
  includedInMembership,
  membershipTiers[]-> { _id }
}
"""


class CMSError(RuntimeError):
    pass


class SanityClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        project_id: Optional[str] = None,
        dataset: Optional[str] = None,
        api_version: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        self.http = http
        self.project_id = project_id or SANITY_PROJECT_ID
        self.dataset = dataset or SANITY_DATASET
        self.api_version = api_version or SANITY_API_VERSION
        self.token = SANITY_TOKEN if token is None else token

    @property
    def query_url(self) -> str:
        return (
            f"https://{self.project_id}.api.sanity.io/v{self.api_version}"
            f"/data/query/{self.dataset}"
        )

    async def fetch(
        self, query: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        if not self.project_id:
            raise CMSError("SANITY_PROJECT_ID is not configured")

        qs = {"query": query}
        for name, value in (params or {}).items():
            # GROQ params travel as JSON literals
            qs[f"${name}"] = json.dumps(value)

        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self.http.get(
                self.query_url, params=qs, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning("CMS request failed: %s", exc, exc_info=True)
            raise CMSError(f"CMS request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise CMSError(
                f"CMS query failed (HTTP {resp.status_code}): "
                f"{resp.text[:300]}"
            )
        return resp.json().get("result")
