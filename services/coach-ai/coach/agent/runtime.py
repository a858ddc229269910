from typing import Optional

import structlog

from ..config import CoachSettings, get_settings
from ..store.memory import InMemoryStore
from .context import ContextAssembler
from .extractor import CompletionExtractor
from .focus import FocusSetManager
from .handlers import build_handlers
from .ledger import HabitCompletionLedger, InFlightGuard
from .lifecycle import ProposalLifecycleManager
from .llm import ModelClient, OpenAIModelClient, ScriptedModelClient
from .pipeline import ConversationPipeline
from .prompts import PromptCatalog, default_catalog
from .router import Router

logger = structlog.get_logger(__name__)

OFFLINE_REPLY = "I'm here to help with your goals and habits. What would you like to work on today?"


class CoachRuntime:
    def __init__(
        self,
        settings: CoachSettings,
        store: InMemoryStore,
        model: ModelClient,
        catalog: PromptCatalog,
    ) -> None:
        self.settings = settings
        self.store = store
        self.model = model
        self.catalog = catalog
        self.ledger = HabitCompletionLedger(store)
        self.in_flight = InFlightGuard()
        self.focus = FocusSetManager(store, default_capacity=settings.default_focus_capacity)
        self.extractor = CompletionExtractor(model, self.ledger, catalog)
        self.handlers = build_handlers(model, store, self.ledger, self.extractor, catalog, settings)
        self.router = Router(self.handlers, catalog)
        self.assembler = ContextAssembler(store, self.focus, self.ledger, settings)
        self.lifecycle = ProposalLifecycleManager(store, self.focus, self.ledger, settings)
        self.pipeline = ConversationPipeline(store, self.assembler, self.router, self.lifecycle)


def _default_model(settings: CoachSettings) -> ModelClient:
    if settings.openai_api_key:
        return OpenAIModelClient(settings)
    logger.warning("runtime.no_api_key", detail="using offline scripted replies")
    return ScriptedModelClient(fallback=OFFLINE_REPLY)


def build_runtime(
    settings: Optional[CoachSettings] = None,
    model: Optional[ModelClient] = None,
    store: Optional[InMemoryStore] = None,
    catalog: Optional[PromptCatalog] = None,
) -> CoachRuntime:
    resolved = settings or get_settings()
    return CoachRuntime(
        settings=resolved,
        store=store or InMemoryStore(),
        model=model or _default_model(resolved),
        catalog=catalog or default_catalog(),
    )


_runtime: Optional[CoachRuntime] = None


def get_runtime() -> CoachRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[CoachRuntime]) -> None:
    global _runtime
    _runtime = runtime
