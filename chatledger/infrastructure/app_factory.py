"""Application factory for dependency injection and wiring."""

import logging
from typing import Optional

from chatledger.application.chat.service import TranscriptChatService
from chatledger.modules.chat_history import TranscriptDatabase, TranscriptRepository
from chatledger.modules.config import ConfigManager
from chatledger.modules.llm.litellm_caller import LiteLLMCaller

logger = logging.getLogger(__name__)


class AppFactory:
    """Application factory that wires dependencies (simple in-memory DI)."""

    def __init__(self) -> None:
        self.config_manager = ConfigManager()

        self.llm_caller = LiteLLMCaller(
            self.config_manager.llm_config,
            debug_mode=self.config_manager.app_settings.debug_mode,
        )

        # Created on first use so the database is only touched once the app starts
        self._database: Optional[TranscriptDatabase] = None
        self._transcript_repository: Optional[TranscriptRepository] = None
        self._chat_service: Optional[TranscriptChatService] = None

        logger.info("AppFactory initialized")

    def initialize_database(self, db_url: Optional[str] = None) -> TranscriptDatabase:
        """Open the transcript database, create missing tables and bind the repository.

        Without ``db_url`` the URL comes from ``AppSettings.chat_history_db_url``.
        Calling it again reuses the open database.
        """
        if self._database is None:
            if db_url:
                self._database = TranscriptDatabase(db_url)
            else:
                self._database = TranscriptDatabase.from_settings(self.config_manager.app_settings)
            self._database.create_schema()
            self._transcript_repository = self._database.repository()
            logger.info("Transcript store ready")
        return self._database

    def get_transcript_repository(self) -> TranscriptRepository:
        if self._transcript_repository is None:
            self.initialize_database()
        return self._transcript_repository

    def get_chat_service(self) -> TranscriptChatService:
        if self._chat_service is None:
            self._chat_service = TranscriptChatService(
                store=self.get_transcript_repository(),
                llm=self.llm_caller,
                config_manager=self.config_manager,
            )
        return self._chat_service

    def set_chat_service(self, service: Optional[TranscriptChatService]) -> None:
        """Replace the chat service (tests wire in fakes here)."""
        self._chat_service = service

    async def shutdown(self) -> None:
        if self._chat_service is not None:
            await self._chat_service.shutdown()
        if self._database is not None:
            self._database.dispose()

    # Accessors
    def get_config_manager(self) -> ConfigManager:  # noqa: D401
        return self.config_manager

    def get_llm_caller(self) -> LiteLLMCaller:  # noqa: D401
        return self.llm_caller


# Temporary global instance during migration away from singletons
app_factory = AppFactory()
