"""Placement API uploader."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from .config import Settings
from .errors import SubmissionError
from .models import PlacementRequest, PlacementResponse
from .utils import sanitize_eml_filename

logger = logging.getLogger(__name__)


class PlacementClient:
    """Submit EML payloads to the placement API as multipart uploads."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.url = settings.placement_endpoint

    async def submit(self, token: str, request: PlacementRequest) -> PlacementResponse:
        """Create a placement and return its identifiers; raises ``SubmissionError``."""
        self.validate_eml(request.eml_content)
        return await asyncio.to_thread(self._post, token, request)

    @staticmethod
    def validate_eml(content: bytes) -> None:
        if not content:
            raise SubmissionError("EML content is empty", kind="invalid_payload")
        head = content[:65536]
        if b"From:" not in head or b"Subject:" not in head:
            raise SubmissionError("EML content is missing required headers", kind="invalid_payload")

    def _post(self, token: str, request: PlacementRequest) -> PlacementResponse:
        headers = {
            "Ocp-Apim-Subscription-Key": self.settings.placement_api_key,
            "Authorization": f"Bearer {token}",
        }
        data = {
            "productCode": request.product_code,
            "emailSender": request.email_sender,
            "emailSubject": request.email_subject,
            "emailReceivedDateTime": request.email_received_at,
        }
        filename = f"{sanitize_eml_filename(request.email_subject)}.eml"
        files = {"files": (filename, request.eml_content, "message/rfc822")}

        logger.info(
            "Submitting placement for product %s (%s bytes)",
            request.product_code,
            len(request.eml_content),
        )
        try:
            response = self.session.post(
                self.url, headers=headers, data=data, files=files, timeout=self.settings.http_timeout
            )
        except requests.RequestException as exc:
            logger.error("Placement API unreachable: %s", exc)
            raise SubmissionError(f"Placement API unreachable: {exc}", kind="network") from exc

        payload = self._parse_response_body(response)
        if response.status_code >= 400:
            logger.error("Placement API failed (%s): %s", response.status_code, payload)
            raise SubmissionError(
                self._error_message(payload) or "Placement API call failed",
                kind="rejected",
                status=response.status_code,
            )

        if not isinstance(payload, dict) or not payload.get("placementId"):
            raise SubmissionError(
                f"Placement API response did not include a placement id: {payload}",
                kind="rejected",
                status=response.status_code,
            )
        logger.info("Placement %s created", payload["placementId"])
        return PlacementResponse(
            placement_id=str(payload["placementId"]),
            ingestion_id=payload.get("ingestionId"),
            run_id=payload.get("runId"),
            raw=payload,
        )

    @staticmethod
    def _parse_response_body(response) -> dict[str, Any] | str:
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(payload) -> str | None:
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                return payload.get("message") or error.get("message")
            return payload.get("message") or error
        if isinstance(payload, str):
            return payload.strip() or None
        return None
