"""Strict schema for model-produced patch proposals.

The model's reply is an external boundary: it is validated as-is, never
coerced. Unknown keys, wrong types and unknown risk classes are rejected.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from nightfix.core.exceptions import MalformedProposal, ResponseParseError
from nightfix.llm.client import parse_json_response


class ProposalPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    diff: str
    rationale: str
    risk_class: Literal["test-only", "artifact-minor", "artifact-structural"]


def parse_proposal(text: str) -> ProposalPayload:
    """Parse and validate a raw model reply.

    Raises:
        MalformedProposal: If the reply is not one JSON object matching
            ProposalPayload exactly.
    """
    try:
        data = parse_json_response(text)
    except ResponseParseError as e:
        raise MalformedProposal(str(e)) from e
    try:
        return ProposalPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedProposal(f"Proposal does not match schema: {e}") from e
