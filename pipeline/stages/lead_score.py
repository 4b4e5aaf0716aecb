import json
from typing import Any, Dict

from pydantic import ValidationError

from pipeline.harness import StageAgent, run_stage, utc_now
from pipeline.state import Lead, ScoreAnalysis
from tools.bus import LEAD_SCORING_CHANNEL, QUALIFIED_LEADS_CHANNEL
from tools.llm import LLMClient, MalformedResponseError


class LeadScoreAgent(StageAgent):
    """Assigns a HOT/WARM/COLD priority to an analyzed lead."""

    name = "lead_score"
    input_channel = LEAD_SCORING_CHANNEL
    output_channel = QUALIFIED_LEADS_CHANNEL
    input_model = Lead

    def setup(self) -> None:
        self.llm = LLMClient()

    def transform(self, lead: Lead, inbound: Dict[str, Any]) -> Dict[str, Any]:
        raw_score = self.llm.score_lead(inbound)
        try:
            score = ScoreAnalysis.model_validate(raw_score)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Score response failed validation: {e.error_count()} error(s)",
                json.dumps(raw_score, default=str),
            ) from e

        self.log.info(
            f"Scored lead from {lead.original_email.sender}: {score.score} "
            f"(priority {score.priority_level}, confidence {score.confidence})"
        )
        return self.extend(
            inbound,
            score_analysis=score.model_dump(mode="json", exclude_none=True),
            scored_at=utc_now(),
        )


if __name__ == "__main__":
    run_stage(LeadScoreAgent)
