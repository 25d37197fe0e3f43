"""Stage executor: one generation-service call per pipeline stage.

The executor turns a stage id plus the run's generation config into a service
request and reports the outcome. It never raises for a failed stage and keeps
no state between calls; the answer-key stage is delegated to the fan-out.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from ivo.models.pipeline_run import StageExecutionResult
from ivo.models.unit import Assessment, UnitGenerationConfig
from ivo.pipeline import catalog
from ivo.pipeline.fan_out import FanOutAggregator
from ivo.utils.generation_client import GenerationClient, GenerationServiceError
from ivo.utils.logging_config import pipeline_stage_logger

logger = logging.getLogger(__name__)


class StageExecutionError(Exception):
    """The service reported a stage as failed."""


def build_stage_params(stage_id: str, config: UnitGenerationConfig) -> Dict[str, Any]:
    """Service parameters for a stage: defaults, then per-stage overrides."""
    if stage_id == catalog.VOCABULARY:
        params: Dict[str, Any] = {
            "target_count": config.vocabulary_target_count,
            "difficulty_level": "intermediate",
            "is_revision_unit": config.is_revision_unit,
            "avoid_repetition": True,
            "ipa_variant": "general_american",
        }
    elif stage_id == catalog.SENTENCES:
        params = {
            "target_count": config.sentences_target_count,
            "complexity_level": "basic",
        }
    elif stage_id == catalog.GRAMMAR:
        params = {
            "strategy_count": 2,
            "grammar_focus": "unit_based",
            "connect_to_vocabulary": True,
        }
    elif stage_id == catalog.TIPS:
        params = {
            "strategy_count": 2,
            "focus_type": "vocabulary",
            "include_l1_warnings": True,
        }
    elif stage_id == catalog.ASSESSMENTS:
        params = {
            "assessment_count": config.assessment_count,
            "difficulty_distribution": "balanced",
            "connect_to_content": True,
            "ensure_variety": True,
        }
    elif stage_id == catalog.QA:
        params = {
            "target_count": config.qa_target_count,
            "bloom_levels": ["remember", "understand", "apply"],
            "difficulty_progression": True,
        }
    elif stage_id == catalog.SOLVE:
        params = {
            "include_explanations": True,
            "difficulty_analysis": True,
        }
    else:
        params = {}

    params.update(config.stage_params.get(stage_id, {}))
    return params


class StageExecutor:
    """Run a single stage against the generation service."""

    def __init__(
        self,
        client: GenerationClient,
        fan_out: Optional[FanOutAggregator] = None,
    ):
        self.client = client
        self.fan_out = fan_out or FanOutAggregator(client)

    def execute(
        self,
        unit_id: str,
        stage_id: str,
        config: UnitGenerationConfig,
        known_assessments: Optional[List[Assessment]] = None,
    ) -> StageExecutionResult:
        """Execute one stage and report success, message and duration.

        Args:
            unit_id: Unit ID
            stage_id: Stage to run
            config: Generation config for the run
            known_assessments: Last known assessment list, used by the answer-key
                stage only if re-fetching from the server fails

        Returns:
            StageExecutionResult (never raises for stage failures)
        """
        if stage_id == catalog.OBJECTIVES:
            return StageExecutionResult(
                stage_id=stage_id,
                success=False,
                message="Objectives are fixed at unit creation and cannot be regenerated",
            )

        params = build_stage_params(stage_id, config)
        start_time = time.time()

        try:
            with pipeline_stage_logger(stage_id, unit_id=unit_id):
                if stage_id == catalog.SOLVE:
                    outcome = self.fan_out.solve_all(
                        unit_id, fallback=known_assessments, options=params
                    )
                    result = StageExecutionResult(
                        stage_id=stage_id,
                        success=outcome.success,
                        message=outcome.message,
                        data=outcome.model_dump(mode="json"),
                    )
                else:
                    response = self.client.generate(stage_id, unit_id, params)
                    result = StageExecutionResult(
                        stage_id=stage_id,
                        success=bool(response.get("success")),
                        message=response.get("message") or "",
                        data=response.get("data"),
                    )

                if not result.success:
                    raise StageExecutionError(result.message or "Invalid response from service")

        except StageExecutionError as e:
            result.message = str(e)
        except (GenerationServiceError, requests.RequestException, ValueError) as e:
            result = StageExecutionResult(stage_id=stage_id, success=False, message=str(e))

        result.duration_ms = int((time.time() - start_time) * 1000)
        return result
