"""Answer-key fan-out for the final pipeline stage.

Answer keys are generated per assessment type, concurrently. The assessment
list is re-fetched from the server right before fan-out because the
assessments stage may have just finished and locally cached data can lag
behind. Every sub-task is awaited regardless of the others; the stage
succeeds if at least one answer key was produced.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional

import requests

from ivo.constants import SOLVE_MAX_WORKERS
from ivo.models.pipeline_run import AssessmentSolveResult, FanOutOutcome
from ivo.models.unit import Assessment
from ivo.utils.generation_client import GenerationClient, GenerationServiceError

logger = logging.getLogger(__name__)

NO_ASSESSMENTS_MESSAGE = (
    "No assessments available to generate answer keys for. "
    "Check that the assessments stage ran successfully."
)


class FanOutAggregator:
    """Launch one answer-key sub-task per assessment type and aggregate."""

    def __init__(self, client: GenerationClient, max_workers: int = SOLVE_MAX_WORKERS):
        self.client = client
        self.max_workers = max_workers

    def fetch_assessments(
        self, unit_id: str, fallback: Optional[List[Assessment]] = None
    ) -> List[Assessment]:
        """Authoritative assessment list, one entry per assessment type.

        Falls back to the given list when the server cannot be reached or
        reports the fetch as unsuccessful.
        """
        try:
            assessments = self.client.get_assessments(unit_id)
            logger.info(f"Fetched {len(assessments)} assessments for unit {unit_id}")
        except (GenerationServiceError, requests.RequestException) as e:
            logger.warning(
                f"Could not re-fetch assessments for {unit_id} ({e}), "
                f"using last known list ({len(fallback or [])} items)"
            )
            assessments = list(fallback or [])

        unique: Dict[str, Assessment] = {}
        for assessment in assessments:
            unique.setdefault(assessment.type, assessment)
        return list(unique.values())

    def solve_one(
        self,
        unit_id: str,
        assessment: Assessment,
        options: Optional[Dict[str, Any]] = None,
    ) -> AssessmentSolveResult:
        """Generate the answer key for a single assessment type. Never raises."""
        options = options or {}
        try:
            response = self.client.solve_or_generate_answer_key(
                unit_id,
                assessment.type,
                include_explanations=options.get("include_explanations", True),
                difficulty_analysis=options.get("difficulty_analysis", True),
            )
        except (GenerationServiceError, requests.RequestException, ValueError) as e:
            logger.error(f"Answer key for {assessment.type} failed: {e}")
            return AssessmentSolveResult(
                assessment_type=assessment.type,
                title=assessment.title,
                success=False,
                error_message=str(e),
            )

        if not response.get("success"):
            message = response.get("message") or "Service reported failure"
            logger.error(f"Answer key for {assessment.type} failed: {message}")
            return AssessmentSolveResult(
                assessment_type=assessment.type,
                title=assessment.title,
                success=False,
                error_message=message,
            )

        data = response.get("data") or {}
        logger.info(f"Answer key for {assessment.type} generated")
        return AssessmentSolveResult(
            assessment_type=assessment.type,
            title=assessment.title,
            success=True,
            payload=data.get("gabarito_result") or data.get("correction_result") or data,
        )

    def solve_all(
        self,
        unit_id: str,
        fallback: Optional[List[Assessment]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> FanOutOutcome:
        """Solve every assessment type of the unit and aggregate the outcome."""
        assessments = self.fetch_assessments(unit_id, fallback)
        if not assessments:
            logger.error(f"No assessments found for unit {unit_id}")
            return FanOutOutcome(success=False, message=NO_ASSESSMENTS_MESSAGE)

        logger.info(f"Generating answer keys for {len(assessments)} assessment types")

        results: Dict[str, AssessmentSolveResult] = {}
        workers = max(1, min(self.max_workers, len(assessments)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_assessment = {
                executor.submit(self.solve_one, unit_id, assessment, options): assessment
                for assessment in assessments
            }

            for future in as_completed(future_to_assessment):
                assessment = future_to_assessment[future]
                try:
                    results[assessment.type] = future.result()
                except Exception as e:
                    logger.error(f"Answer-key task for {assessment.type} crashed: {e}")
                    results[assessment.type] = AssessmentSolveResult(
                        assessment_type=assessment.type,
                        title=assessment.title,
                        success=False,
                        error_message=str(e),
                    )

        ordered = [results[a.type] for a in assessments]
        success_count = sum(1 for r in ordered if r.success)
        total_count = len(ordered)

        outcome = FanOutOutcome(
            success=success_count > 0,
            message=f"Answer keys: {success_count}/{total_count} generated successfully",
            results=ordered,
            success_count=success_count,
            total_count=total_count,
        )
        logger.info(outcome.message)
        return outcome
