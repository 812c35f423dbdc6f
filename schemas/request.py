from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from transport.subjects import is_valid_token


MIN_NODE_COUNT = 5
MAX_NODE_COUNT = 50
VALID_STORY_STRUCTURES = ("guided", "adventure", "epic", "choose_your_path")


class AgeGroup(str, Enum):
    AGE_6_8 = "6-8"
    AGE_9_11 = "9-11"
    AGE_12_14 = "12-14"
    AGE_15_17 = "15-17"
    ADULT = "+18"


class Language(str, Enum):
    DE = "de"
    EN = "en"


class VocabularyLevel(str, Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class RequestConstraints(BaseModel):
    """Optional limits applied by the generation pipeline."""
    max_choices_per_node: Optional[int] = Field(default=None, ge=2, le=10)
    min_story_length: Optional[int] = Field(default=None, ge=100, le=10000)
    forbidden_topics: List[str] = Field(default_factory=list)
    required_topics: List[str] = Field(default_factory=list)


class RequestMetadata(BaseModel):
    """Lifecycle bookkeeping for a submission."""
    submitted_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="ISO-8601 submission time",
    )
    submitted_by: Optional[str] = None
    original_request_id: Optional[str] = Field(
        default=None,
        description="Set when this request replays an earlier one",
    )


class GenerationRequest(BaseModel):
    """
    Submission parameters for one trail generation job.

    request_id is left empty by callers; the client assigns it at submit time.
    """
    request_id: Optional[str] = Field(default=None, description="Assigned on submission")
    tenant_id: str = Field(..., description="Tenant that owns the request")
    theme: str = Field(..., description="Story theme, e.g. 'Space Adventure'")
    age_group: AgeGroup = Field(default=AgeGroup.AGE_9_11)
    language: Language = Field(default=Language.EN)
    vocabulary_level: VocabularyLevel = Field(default=VocabularyLevel.INTERMEDIATE)
    node_count: int = Field(default=16, ge=MIN_NODE_COUNT, le=MAX_NODE_COUNT)
    educational_focus: Optional[List[str]] = None
    constraints: Optional[RequestConstraints] = None
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)
    story_structure: Optional[str] = Field(
        default=None,
        description=f"Preset structure: {', '.join(VALID_STORY_STRUCTURES)}",
    )

    @field_validator("tenant_id", "theme")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("tenant_id")
    @classmethod
    def tenant_is_subject_token(cls, value: str) -> str:
        # Tenant ids become one token of the event subject
        if not is_valid_token(value):
            raise ValueError("tenant_id must not contain '.', '*', '>' or whitespace")
        return value

    @field_validator("request_id")
    @classmethod
    def request_id_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("request_id must not be empty")
        if value is not None and not is_valid_token(value):
            raise ValueError("request_id must not contain '.', '*', '>' or whitespace")
        return value

    @field_validator("story_structure")
    @classmethod
    def known_structure(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in VALID_STORY_STRUCTURES:
            raise ValueError(
                f"story_structure must be one of: {', '.join(VALID_STORY_STRUCTURES)}. Got: {value}"
            )
        return value

    def for_replay(self, new_request_id: str) -> "GenerationRequest":
        """Copy of this request under a new id, remembering where it came from."""
        metadata = self.metadata.model_copy(
            update={
                "submitted_at": datetime.now(timezone.utc).isoformat(),
                "original_request_id": self.request_id,
            }
        )
        return self.model_copy(update={"request_id": new_request_id, "metadata": metadata})
