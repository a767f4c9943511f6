from pathlib import Path
from typing import Optional

from parley.config.config_manager import ConfigManager
from parley.core.orchestrator import CompletionOrchestrator
from parley.core.provider_manager import ProviderManager
from parley.core.store import ConversationStore
from parley.storage.gateway import JsonFileGateway, PersistenceGateway
from parley.utils.logging import get_logger, resolve_level, setup_logging

logger = get_logger(__name__)


class ParleyApp:
    """
    Main application class that wires the components together and owns their lifecycle.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        gateway: Optional[PersistenceGateway] = None,
        debug: bool = False,
    ):
        self.config_manager = ConfigManager(config_path) if config_path else ConfigManager()
        config = self.config_manager.config

        setup_logging(resolve_level(config.logging.level, debug), config.logging.file)

        self.gateway = gateway or JsonFileGateway(Path(config.storage.path).expanduser())
        self.provider_manager = ProviderManager(self.config_manager)
        self.orchestrator = CompletionOrchestrator(throttle_ms=config.streaming.throttle_ms)
        self.store = ConversationStore(
            self.gateway,
            self.provider_manager,
            self.orchestrator,
            cache_size=config.storage.cache_size,
            max_history=config.storage.max_history,
            snapshot_interval=config.storage.snapshot_interval,
        )
        self.store.load()
        logger.debug("ParleyApp initialized")

    @classmethod
    def create(cls, config_path: Optional[str] = None, debug: bool = False) -> "ParleyApp":
        """
        Factory method to create a ParleyApp instance.
        """
        return cls(config_path, debug=debug)

    async def close(self):
        """Stop streaming replies and detach listeners."""
        await self.store.close()
        logger.debug("ParleyApp closed")

    async def __aenter__(self) -> "ParleyApp":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
