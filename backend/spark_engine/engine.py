"""
Engine wiring: one instance of every queue handler plus the workflow executor,
and the poller loop that drives them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from spark_engine.config import Settings, get_settings
from spark_engine.llm.command_executor import CommandExecutor, ProviderCommandExecutor
from spark_engine.llm.gemini import GeminiProviderFactory
from spark_engine.llm.provider import ProviderFactory
from spark_engine.services.chat_queue import ChatNameGenerator, ChatQueueHandler
from spark_engine.services.workflow_edit import WorkflowEditHandler
from spark_engine.services.workflow_executor import WorkflowExecutor
from spark_engine.services.workflow_generate import WorkflowGenerateHandler

logger = logging.getLogger(__name__)


class SparkEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider_factory: Optional[ProviderFactory] = None,
        command_executor: Optional[CommandExecutor] = None,
    ):
        self.settings = settings or get_settings()
        vault = self.settings.vault_path

        self.provider_factory = provider_factory or GeminiProviderFactory(self.settings)
        self.command_executor = command_executor or ProviderCommandExecutor(self.provider_factory, vault)

        self.generate_handler = WorkflowGenerateHandler(
            vault, self.provider_factory, max_attempts=self.settings.max_repair_attempts
        )
        self.edit_handler = WorkflowEditHandler(
            vault, self.provider_factory, max_attempts=self.settings.max_repair_attempts
        )
        self.chat_handler = ChatQueueHandler(
            vault, self.command_executor, name_generator=ChatNameGenerator(self.provider_factory)
        )
        self.executor = WorkflowExecutor(vault, self.command_executor, settings=self.settings)

    async def scan_once(self) -> None:
        """Drain every queue directory once, in a fixed order."""
        await self.generate_handler.scan_queue()
        await self.edit_handler.scan_queue()
        await self.executor.scan_queue()
        await self.chat_handler.scan_queue()

    async def run_poller(self) -> None:
        logger.info(
            "Queue poller started (vault=%s, interval=%.1fs)",
            self.settings.vault_path,
            self.settings.poll_interval,
        )
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Queue scan failed")
            await asyncio.sleep(self.settings.poll_interval)
