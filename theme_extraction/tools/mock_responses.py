"""
Mock LLM responses for testing and offline development.

Deterministic answers derived from the prompt itself, so a mock run still
produces grounded codes and labels. Designed to work with pydantic-ai's
FunctionModel (see LLMService in mock mode).

Recognised prompts (markers are set by the prompt templates in
themes/code_extractor.py, themes/splitting.py and themes/labeling.py):
  - "=== SOURCE <id> ===" blocks  → {"codes": [...]} from each source's sentences
  - "=== CODE <id> ===" blocks    → {"splits": [...]} clause splits
  - "KEYWORDS:" line              → {"label", "description", "keywords"}
"""

import json
import logging
import re
from typing import Any, Dict, List

from pydantic_ai.messages import ModelResponse, TextPart

logger = logging.getLogger(__name__)

_SOURCE_BLOCK = re.compile(r"=== SOURCE (\S+) ===\n(.*?)(?=\n=== SOURCE |\n=== END ===|\Z)", re.S)
_CODE_BLOCK = re.compile(r"=== CODE (\S+) ===\n(.*?)(?=\n=== CODE |\n=== END ===|\Z)", re.S)
_KEYWORDS_LINE = re.compile(r"^KEYWORDS:\s*(.+)$", re.M)
_TITLE_LINE = re.compile(r"^Title: [^\n]*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

MAX_MOCK_CODES_PER_SOURCE = 6


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > 20]


def _mock_codes(prompt: str) -> Dict[str, Any]:
    codes = []
    for source_id, body in _SOURCE_BLOCK.findall(prompt):
        body = _TITLE_LINE.sub("", body, count=1)
        for sentence in _sentences(body)[:MAX_MOCK_CODES_PER_SOURCE]:
            label = sentence.rstrip(".!?")
            codes.append({
                "sourceId": source_id,
                "label": label[:200],
                "description": f"Statement drawn from source {source_id}",
                "excerpts": [sentence[:300]],
            })
    return {"codes": codes}


def _mock_splits(prompt: str) -> Dict[str, Any]:
    splits = []
    for code_id, body in _CODE_BLOCK.findall(prompt):
        first_line = body.strip().splitlines()[0] if body.strip() else ""
        clauses = [c.strip(" .") for c in re.split(r";|, and | but ", first_line) if len(c.strip()) > 15]
        splits.append({
            "originalCodeId": code_id,
            "atomicStatements": [
                {"label": c, "description": "", "groundingExcerpt": c} for c in clauses
            ],
        })
    return {"splits": splits}


def _mock_label(prompt: str) -> Dict[str, Any]:
    match = _KEYWORDS_LINE.search(prompt)
    keywords = [k.strip() for k in match.group(1).split(",") if k.strip()] if match else []
    label = " ".join(w.capitalize() for w in keywords[:3]) or "General Theme"
    return {
        "label": label,
        "description": f"Codes concerning {', '.join(keywords[:5]) or 'a shared topic'}.",
        "keywords": keywords[:7],
    }


def get_mock_response(prompt: str, json_mode: bool = True) -> str:
    """Return a deterministic mock response for `prompt`."""
    if "=== SOURCE " in prompt:
        return json.dumps(_mock_codes(prompt))
    if "=== CODE " in prompt:
        return json.dumps(_mock_splits(prompt))
    if "KEYWORDS:" in prompt:
        return json.dumps(_mock_label(prompt))
    logger.debug("Mock LLM: unrecognised prompt, returning empty object")
    return "{}" if json_mode else ""


def get_mock_response_for_function_model(messages: list[Any], info: Any) -> ModelResponse:
    """Adapter for pydantic-ai FunctionModel.

    FunctionModel passes ModelMessage objects. We extract the user prompt
    text and delegate to the main mock function.
    """
    prompt = ""
    system_prompt = ""
    for msg in messages:
        if hasattr(msg, 'parts'):
            for part in msg.parts:
                if not hasattr(part, 'content') or not isinstance(part.content, str):
                    continue
                part_type = type(part).__name__
                if "User" in part_type:
                    prompt = part.content
                elif "System" in part_type:
                    system_prompt = part.content
    json_mode = "json" in (prompt + " " + system_prompt).lower()
    return ModelResponse(parts=[TextPart(content=get_mock_response(prompt, json_mode))])
