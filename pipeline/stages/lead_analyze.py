import copy
from typing import Any, Dict

from pipeline.harness import StageAgent, run_stage, utc_now
from pipeline.state import Lead, RawEmail
from tools.bus import LEAD_CHANNEL, LEAD_SCORING_CHANNEL
from tools.llm import LLMClient


class LeadAnalyzeAgent(StageAgent):
    """Infers opportunities, needs, risks and urgency from a lead email."""

    name = "lead_analyze"
    input_channel = LEAD_CHANNEL
    output_channel = LEAD_SCORING_CHANNEL
    input_model = RawEmail

    def setup(self) -> None:
        self.llm = LLMClient()

    def transform(self, email: RawEmail, inbound: Dict[str, Any]) -> Dict[str, Any]:
        analysis = self.llm.analyze_lead(inbound)

        outbound = {
            "customer_id": self.customer_id,
            "original_email": copy.deepcopy(inbound),
            "analysis": analysis,
            "analyzed_at": utc_now(),
        }
        # Reject empty analyses before they reach scoring
        Lead.model_validate(outbound)

        self.log.info(f"Analyzed lead from {email.sender}: {email.subject}")
        return outbound


if __name__ == "__main__":
    run_stage(LeadAnalyzeAgent)
