"""
Pydantic models for LLM structured output.

These models define ONLY what the LLM produces. Ids, embeddings and
provenance are set programmatically afterwards. Responses are parsed with
tools.json_repair.parse_model() which returns a tagged ParseResult, so an
unvalidated dict never enters the pipeline.

Convention: Suffix with "LLM" to distinguish from the domain schemas.
"""

from typing import Annotated, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.functional_validators import BeforeValidator


def _coerce_to_str(v):
    if isinstance(v, dict):
        for key in ("text", "statement", "label", "value"):
            if key in v and v[key]:
                return str(v[key])
        vals = [str(x) for x in v.values() if x and isinstance(x, (str, int, float))]
        return " ".join(vals) if vals else ""
    return str(v) if v is not None else ""


def _coerce_to_list(v):
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    return v


StrFromDict = Annotated[str, BeforeValidator(_coerce_to_str)]
StrList = Annotated[List[StrFromDict], BeforeValidator(_coerce_to_list)]


class CodeLLM(BaseModel):
    """One atomic statement extracted from a source."""
    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(alias="sourceId")
    label: StrFromDict = Field(min_length=3, max_length=300)
    description: StrFromDict = ""
    excerpts: StrList = Field(default_factory=list)

    @field_validator("label", mode="after")
    @classmethod
    def _strip_label(cls, v: str) -> str:
        return " ".join(v.split())


class CodeBatchLLM(BaseModel):
    """LLM output for one extraction batch."""
    codes: List[CodeLLM] = Field(min_length=1)


class ThemeLabelLLM(BaseModel):
    """LLM output for labeling one cluster."""
    label: StrFromDict = Field(min_length=3, max_length=120)
    description: StrFromDict = ""
    keywords: StrList = Field(default_factory=list)


class AtomicStatementLLM(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    label: StrFromDict = Field(min_length=3)
    description: StrFromDict = ""
    grounding_excerpt: StrFromDict = Field(default="", alias="groundingExcerpt")


class CodeSplitLLM(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_code_id: str = Field(alias="originalCodeId")
    atomic_statements: List[AtomicStatementLLM] = Field(
        default_factory=list, alias="atomicStatements",
    )


class CodeSplitBatchLLM(BaseModel):
    """LLM output for splitting long codes into atomic statements."""
    splits: List[CodeSplitLLM] = Field(default_factory=list)
