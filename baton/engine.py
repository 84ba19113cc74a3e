"""Wiring of the workflow engine components from configuration."""

from __future__ import annotations

import inspect
import logging
from typing import Optional

from .agents import AgentRouter
from .approval import ApprovalGate, ApprovalTimeoutSweeper
from .config import BatonConfig, load_config
from .context import ContextSummarizer, SharedContextStore
from .executor import StepExecutor
from .handoff import HandoffTracker
from .instances import WorkflowInstanceService
from .notifications import NotificationChannel, get_notification_channel
from .persistence import WorkflowRepository, get_repository
from .registry import REGISTRY, WorkflowRegistry, load_definitions

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Fully wired set of engine services sharing one repository."""

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: WorkflowRegistry,
        router: AgentRouter,
        notifier: Optional[NotificationChannel] = None,
        config: Optional[BatonConfig] = None,
    ) -> None:
        self.config = config or BatonConfig()
        self.repository = repository
        self.registry = registry
        self.router = router
        self.notifier = notifier
        engine_conf = self.config.engine

        self.instances = WorkflowInstanceService(repository, registry)
        self.shared_context = SharedContextStore(
            repository,
            max_attempts=engine_conf.shared_context_max_attempts,
            backoff_seconds=engine_conf.shared_context_backoff_seconds,
        )
        self.summarizer = ContextSummarizer()
        self.handoffs = HandoffTracker(repository)
        self.approvals = ApprovalGate(repository)
        self.executor = StepExecutor(
            repository,
            registry,
            router,
            instances=self.instances,
            shared_context=self.shared_context,
            summarizer=self.summarizer,
            handoffs=self.handoffs,
            approvals=self.approvals,
            notifier=notifier,
            config=engine_conf,
        )
        self.sweeper = ApprovalTimeoutSweeper(
            self.approvals,
            self.instances,
            notifier=notifier,
            config=self.config.approvals,
        )

    async def start(self) -> None:
        """Connect the notification channel and launch the approval sweeper."""
        if self.notifier is not None:
            await self.notifier.connect()
        self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        if self.notifier is not None:
            await self.notifier.disconnect()
        close = getattr(self.repository, "close", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result


def build_engine(
    config: Optional[BatonConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    registry: Optional[WorkflowRegistry] = None,
    router: Optional[AgentRouter] = None,
    notifier: Optional[NotificationChannel] = None,
) -> WorkflowEngine:
    """Build a :class:`WorkflowEngine`, filling gaps from ``config``.

    Definitions are loaded from ``config.definitions_path`` when set,
    otherwise the process-wide ``REGISTRY`` is used.
    """

    config = config or load_config()
    if registry is None:
        if config.definitions_path:
            registry = load_definitions(config.definitions_path)
        else:
            registry = REGISTRY
    engine = WorkflowEngine(
        repository=repository or get_repository(config=config),
        registry=registry,
        router=router or AgentRouter(),
        notifier=notifier or get_notification_channel(config=config),
        config=config,
    )
    logger.debug(f"Built workflow engine with {type(engine.repository).__name__}")
    return engine
