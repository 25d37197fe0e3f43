"""
HTTP client for the IVO content-generation service.

This module wraps the v2 REST API used by the unit pipeline:
- Reading the unit snapshot and its assessment list
- Triggering per-stage content generation (vocabulary, sentences, ...)
- Generating answer keys per assessment type, with fallback to the
  legacy solve endpoint
- Retry with exponential backoff for idempotent reads

Generation calls are never retried here: a failed stage is reported to the
orchestrator, which records it and moves on.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from ivo.constants import (
    GENERATION_TIMEOUT_SECONDS,
    IVO_API_BASE_URL,
    IVO_API_TOKEN,
    UNIT_FETCH_TIMEOUT_SECONDS,
)
from ivo.models.unit import Assessment, UnitSnapshot

logger = logging.getLogger(__name__)


class GenerationServiceError(Exception):
    """Raised when the generation service rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# Stage id -> path suffix under /api/v2/units/{unit_id}
STAGE_ENDPOINTS = {
    "vocabulary": "vocabulary",
    "sentences": "sentences",
    "grammar": "grammar",
    "tips": "tips",
    "assessments": "assessments",
    "qa": "qa",
}


class GenerationClient:
    """Client for the generation service REST API."""

    # Retry configuration (reads only)
    MAX_RETRIES = 3
    RETRY_BASE_DELAY = 1.0  # seconds
    RETRY_MULTIPLIER = 2.0

    API_PREFIX = "/api/v2"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        generation_timeout: float = GENERATION_TIMEOUT_SECONDS,
        read_timeout: float = UNIT_FETCH_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Service root URL (default: IVO_API_BASE_URL)
            api_token: Bearer token (default: IVO_API_TOKEN)
            generation_timeout: Timeout for generation calls, in seconds
            read_timeout: Timeout for snapshot reads, in seconds
            session: Optional preconfigured requests session
        """
        self.base_url = (base_url or IVO_API_BASE_URL).rstrip("/")
        self.generation_timeout = generation_timeout
        self.read_timeout = read_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        token = api_token or IVO_API_TOKEN
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.API_PREFIX}{path}"

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send one request and return the decoded JSON envelope.

        Raises:
            GenerationServiceError: On non-2xx responses
            requests.RequestException: On connection errors and timeouts
        """
        url = self._url(path)
        response = self.session.request(
            method,
            url,
            json=body,
            timeout=timeout or self.generation_timeout,
        )

        if not response.ok:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = None
            raise GenerationServiceError(
                detail or f"Error {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )

        return response.json()

    def _get_with_retry(self, path: str) -> Dict[str, Any]:
        """GET with exponential backoff on network errors and 5xx replies."""
        last_error: Optional[Exception] = None
        for attempt in range(self.MAX_RETRIES):
            try:
                return self._request("GET", path, timeout=self.read_timeout)
            except GenerationServiceError as e:
                if e.status_code is not None and e.status_code < 500:
                    raise
                last_error = e
            except requests.RequestException as e:
                last_error = e

            logger.warning(
                f"GET {path} attempt {attempt + 1}/{self.MAX_RETRIES} failed: {last_error}"
            )
            if attempt < self.MAX_RETRIES - 1:
                time.sleep(self.RETRY_BASE_DELAY * (self.RETRY_MULTIPLIER ** attempt))

        raise GenerationServiceError(
            f"GET {path} failed after {self.MAX_RETRIES} attempts: {last_error}"
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_unit(self, unit_id: str) -> UnitSnapshot:
        """Fetch the unit with all generated content."""
        envelope = self._get_with_retry(f"/units/{unit_id}")
        data = envelope.get("data") or {}
        snapshot = UnitSnapshot.from_api(data)
        logger.debug(f"Fetched unit {unit_id} ({snapshot.unit_type.value})")
        return snapshot

    def get_assessments(self, unit_id: str) -> List[Assessment]:
        """Fetch the unit's current assessment activities straight from the server.

        Raises:
            GenerationServiceError: The service answered with `success: false`
        """
        envelope = self._get_with_retry(f"/units/{unit_id}/assessments")
        if not envelope.get("success"):
            raise GenerationServiceError(
                f"Assessments fetch for {unit_id} not successful: "
                f"{envelope.get('message') or 'no message'}"
            )

        data = envelope.get("data") or {}
        activities = (data.get("assessments") or {}).get("activities") or []
        return [Assessment.model_validate(a) for a in activities]

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self, stage_id: str, unit_id: str, params: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Trigger content generation for one stage.

        Args:
            stage_id: One of STAGE_ENDPOINTS
            unit_id: Unit ID
            params: Stage parameters, sent unmodified

        Returns:
            Response envelope with `success`, `message` and `data`
        """
        endpoint = STAGE_ENDPOINTS.get(stage_id)
        if endpoint is None:
            raise ValueError(f"No generation endpoint for stage '{stage_id}'")

        logger.info(f"Requesting {stage_id} generation for unit {unit_id}")
        return self._request("POST", f"/units/{unit_id}/{endpoint}", body=params)

    def generate_answer_key(
        self,
        unit_id: str,
        assessment_type: str,
        include_explanations: bool = True,
        difficulty_analysis: bool = True,
    ) -> Dict[str, Any]:
        """Generate the answer key for one assessment type."""
        return self._request(
            "POST",
            f"/{unit_id}/generate_gabarito",
            body={
                "assessment_type": assessment_type,
                "include_explanations": include_explanations,
                "difficulty_analysis": difficulty_analysis,
            },
        )

    def solve_assessment(
        self,
        unit_id: str,
        assessment_type: str,
        include_student_answers: bool = False,
        student_context: str = "Automatic correction by the IVO system",
    ) -> Dict[str, Any]:
        """Legacy solve endpoint, kept as fallback for older deployments."""
        return self._request(
            "POST",
            f"/units/{unit_id}/solve_assessments",
            body={
                "assessment_type": assessment_type,
                "include_student_answers": include_student_answers,
                "student_context": student_context,
            },
        )

    def solve_or_generate_answer_key(
        self,
        unit_id: str,
        assessment_type: str,
        include_explanations: bool = True,
        difficulty_analysis: bool = True,
    ) -> Dict[str, Any]:
        """Try the answer-key endpoint first, fall back to the legacy solver."""
        try:
            return self.generate_answer_key(
                unit_id,
                assessment_type,
                include_explanations=include_explanations,
                difficulty_analysis=difficulty_analysis,
            )
        except (GenerationServiceError, requests.RequestException) as e:
            logger.warning(
                f"Answer-key endpoint failed for {assessment_type} ({e}), "
                f"falling back to legacy solver"
            )
            return self.solve_assessment(unit_id, assessment_type)
