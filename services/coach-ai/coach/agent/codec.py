"""
Proposal wire format.

A proposal travels at the tail of the assistant message it belongs to: the
reply text, a blank line, a ``---json---`` line, then the canonical JSON
object carrying a ``type`` field.

``decode`` splits on the last delimiter and never raises: anything that does
not parse or validate reads back as plain text.
"""

import json
from typing import Any, Optional, Tuple

import structlog
from pydantic import ValidationError

from ..schemas.proposal import Proposal, ProposalAdapter

logger = structlog.get_logger(__name__)

DELIMITER = "---json---"
SEPARATOR = f"\n\n{DELIMITER}\n"
ESCAPED_DELIMITER = DELIMITER.replace("-", "\\u002d")


def canonical_json(proposal: Proposal) -> str:
    payload = ProposalAdapter.dump_python(proposal, mode="json", by_alias=True, exclude_none=True)
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    # The delimiter can only appear inside JSON strings, where the escaped form decodes to the same text.
    return serialized.replace(DELIMITER, ESCAPED_DELIMITER)


def encode(text: str, proposal: Optional[Proposal]) -> str:
    if proposal is None:
        return text
    return f"{text}{SEPARATOR}{canonical_json(proposal)}"


def parse_proposal(payload: Any) -> Optional[Proposal]:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return None
    try:
        return ProposalAdapter.validate_python(payload)
    except ValidationError as exc:
        logger.debug("codec.invalid_proposal", proposal_type=payload.get("type"), errors=exc.error_count())
        return None


def decode(content: str) -> Tuple[str, Optional[Proposal]]:
    if not content or DELIMITER not in content:
        return content, None
    head, _, tail = content.rpartition(DELIMITER)
    proposal = parse_proposal(tail.strip())
    if proposal is None:
        return content, None
    if head.endswith("\n\n"):
        text = head[:-2]
    else:
        text = head.rstrip()
    return text, proposal


def strip_proposal(content: str) -> str:
    text, _ = decode(content)
    return text
