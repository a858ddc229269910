"""
Handler prompt templates and their rendering.

Templates live in ``templates/handlers.yaml``. A template is filled by single-pass
string replacement of ``{name}`` tokens from a ``PromptParams`` value; a token
without a value is an error, both when the catalog is loaded (against the
declared block names) and at render time.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

from .errors import PromptTemplateError

logger = structlog.get_logger(__name__)

PROMPTS_PATH = Path(__file__).parent / "templates" / "handlers.yaml"
PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")
SHARED_PLACEHOLDERS = ("profile", "working_set", "focus_set", "recent_messages")
EXTRACTOR_PLACEHOLDERS = ("habit_titles", "today")


class PromptParams(BaseModel):
    profile: str = ""
    working_set: str = ""
    focus_set: str = ""
    recent_messages: str = ""
    blocks: Dict[str, str] = Field(default_factory=dict)

    def values(self) -> Dict[str, str]:
        return {
            "profile": self.profile,
            "working_set": self.working_set,
            "focus_set": self.focus_set,
            "recent_messages": self.recent_messages,
            **self.blocks,
        }


class HandlerTemplate(BaseModel):
    name: str
    template: str
    temperature: float = 0.7
    blocks: List[str] = Field(default_factory=list)
    proposal_types: List[str] = Field(default_factory=list)


class SuggestionTemplate(BaseModel):
    name: str
    keywords: List[str] = Field(default_factory=list)
    text: str
    items: List[Dict[str, Any]]


class PromptCatalog(BaseModel):
    handlers: Dict[str, HandlerTemplate]
    shared: Dict[str, str] = Field(default_factory=dict)
    extractor_template: str
    extractor_temperature: float = 0.0
    handoff_phrases: Dict[str, List[str]] = Field(default_factory=dict)
    setup_phrases: List[str] = Field(default_factory=list)
    suggestion_catalog: List[SuggestionTemplate] = Field(default_factory=list)

    def handler(self, handler_type: str) -> HandlerTemplate:
        template = self.handlers.get(handler_type)
        if not template:
            raise KeyError(f"No prompt template for handler {handler_type}")
        return template


def placeholders(template: str) -> List[str]:
    seen: List[str] = []
    for name in PLACEHOLDER.findall(template):
        if name not in seen:
            seen.append(name)
    return seen


def check_template(name: str, template: str, available: List[str]) -> None:
    unknown = [placeholder for placeholder in placeholders(template) if placeholder not in available]
    if unknown:
        raise PromptTemplateError(name, [], unknown)


def render_prompt(name: str, template: str, params: PromptParams) -> str:
    values = params.values()
    missing = [placeholder for placeholder in placeholders(template) if placeholder not in values]
    if missing:
        raise PromptTemplateError(name, missing)
    return PLACEHOLDER.sub(lambda match: values[match.group(1)], template)


def _parse_catalog(raw: Any) -> PromptCatalog:
    if not isinstance(raw, dict):
        raise ValueError("Prompt file did not produce an object")
    shared = {key: str(value) for key, value in (raw.get("shared") or {}).items()}
    handlers: Dict[str, HandlerTemplate] = {}
    for name, entry in (raw.get("handlers") or {}).items():
        handler = HandlerTemplate(name=name, **entry)
        check_template(name, handler.template, [*SHARED_PLACEHOLDERS, *handler.blocks])
        handlers[name] = handler

    extractor = raw.get("extractor") or {}
    check_template("extractor", str(extractor.get("template") or ""), list(EXTRACTOR_PLACEHOLDERS))
    return PromptCatalog(
        handlers=handlers,
        shared=shared,
        extractor_template=str(extractor.get("template") or ""),
        extractor_temperature=float(extractor.get("temperature") or 0.0),
        handoff_phrases=raw.get("handoff_phrases") or {},
        setup_phrases=raw.get("setup_phrases") or [],
        suggestion_catalog=[SuggestionTemplate(**entry) for entry in raw.get("suggestion_catalog") or []],
    )


def load_catalog(path: Optional[Path] = None) -> PromptCatalog:
    file_path = path or PROMPTS_PATH
    content = file_path.read_text(encoding="utf-8")
    catalog = _parse_catalog(yaml.safe_load(content))
    logger.debug("prompts.loaded", path=str(file_path), handlers=sorted(catalog.handlers))
    return catalog


@lru_cache(maxsize=1)
def default_catalog() -> PromptCatalog:
    return load_catalog()
