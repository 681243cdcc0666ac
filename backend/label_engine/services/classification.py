"""Classification value types shared by every tier."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from label_engine.services.heuristics import UNCATEGORIZED, detect_facets


class ClassificationResult(BaseModel):
    """Immutable per-email classification, produced by exactly one tier."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    is_hierarchy: bool
    is_client: bool
    is_meeting: bool
    is_escalation: bool
    is_urgent: bool
    suggested_label: str = Field(min_length=1, max_length=128)
    reasoning: str = ""
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def is_uncategorized(self) -> bool:
        return self.suggested_label == UNCATEGORIZED


class FewShotExample(BaseModel):
    """A previously classified email shown to the LLM as guidance."""

    subject: str = ""
    sender: str = ""
    suggested_label: str
    reasoning: str = "Previous classification"
    similarity: Optional[float] = None


def heuristic_result(subject: str, body: str, label: str, reasoning: str) -> ClassificationResult:
    """Build a result whose facets come from the keyword regexes."""
    return ClassificationResult(
        **detect_facets(f"{subject} {body}"),
        suggested_label=label,
        reasoning=reasoning,
    )
