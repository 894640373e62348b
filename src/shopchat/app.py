"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from shopchat.ai.client import AnthropicClient, ModelClient
from shopchat.ai.dispatcher import ToolDispatcher
from shopchat.ai.handler import ConversationManager
from shopchat.ai.tool_runner import TurnRunner
from shopchat.ai.tools.executor import HttpToolExecutor, ToolExecutor
from shopchat.ai.tools.registry import ToolRegistry
from shopchat.config import AppConfig
from shopchat.core.retry import RetryPolicy
from shopchat.core.session import SessionManager
from shopchat.errors import ConfigurationError
from shopchat.log import get_logger
from shopchat.services.archiver import SessionArchiver
from shopchat.services.service_manager import ServiceManager
from shopchat.storage.archive_repo import ArchiveRepository
from shopchat.storage.database import Database

logger = get_logger(__name__)


class ShopChatApp:
    """Top-level application orchestrator.

    *model_client* and *executor* default to the configured Anthropic backend
    and the HTTP tool service.
    """

    def __init__(
        self,
        config: AppConfig,
        model_client: ModelClient | None = None,
        executor: ToolExecutor | None = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.archive_repo = ArchiveRepository(self.db)
        self.session_manager = SessionManager(config.session)
        self.tool_registry = ToolRegistry()
        self.model_client = model_client or self._create_model_client()
        self.executor = executor or HttpToolExecutor(config.tool_service)
        self.dispatcher = ToolDispatcher(
            self.tool_registry,
            self.executor,
            retry=RetryPolicy.from_config(config.retry),
            attempt_timeout=config.tool_service.timeout,
            max_concurrency=config.conversation.max_concurrent_tools,
        )
        self.runner = TurnRunner(
            self.model_client,
            self.dispatcher,
            max_rounds=config.conversation.max_tool_rounds,
            history_limit=config.conversation.max_history_messages,
            max_block_chars=config.conversation.max_block_chars,
            generation_timeout=config.model.timeout,
        )
        self.archiver = SessionArchiver(
            self.archive_repo,
            config.archiver,
            on_archived=self.session_manager.on_archived,
        )
        self.conversations = ConversationManager(
            self.session_manager,
            self.runner,
            self.tool_registry,
            model_config=config.model,
            conversation_config=config.conversation,
            session_config=config.session,
            archiver=self.archiver,
        )
        self.service_manager = ServiceManager(
            self.archiver,
            self.conversations,
            archiver_config=config.archiver,
            session_config=config.session,
        )

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Archive database
        await self.db.initialize()

        # 2. Tools
        self.tool_registry.discover_and_register()
        missing = [n for n in self.config.conversation.tools if self.tool_registry.get(n) is None]
        if missing:
            logger.warning("configured_tools_missing", tools=missing)

        # 3. Background services
        await self.service_manager.start_all()

        logger.info(
            "shopchat_started",
            model=self.model_client.model_name,
            tools=len(self.tool_registry.names()),
            tool_service=self.config.tool_service.endpoint,
        )

    async def stop(self) -> None:
        """Close open sessions, flush the archive and release clients."""
        for session_id in self.session_manager.ids():
            await self.conversations.close(session_id, reason="shutdown")

        await self.service_manager.stop_all()
        await self.executor.aclose()
        await self.model_client.aclose()
        await self.db.close()
        logger.info("shopchat_stopped")

    def _create_model_client(self) -> ModelClient:
        """Create the model client for the configured backend."""
        match self.config.model.backend:
            case "anthropic":
                if not self.config.anthropic:
                    raise ConfigurationError(
                        "model backend 'anthropic' requires an 'anthropic' section in config"
                    )
                return AnthropicClient(self.config.anthropic, self.config.model)
            case _:
                raise ConfigurationError(f"Unknown model backend: {self.config.model.backend}")
