"""
Chat queue handler.

Chat messages arrive as markdown files in ``.spark/chat-queue``: YAML-ish
frontmatter naming the conversation, followed by the user message and an
optional transcript of earlier messages between HTML comment markers. Replies
are appended to ``.spark/chat-results/<conversationId>.jsonl``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from spark_engine.errors import format_error_for_chat
from spark_engine.llm.command_executor import CommandExecutor
from spark_engine.llm.provider import ProviderFactory, complete_text
from spark_engine.models.queue import ChatResult
from spark_engine.services.runners.prompt_runner import extract_agent
from spark_engine.services.workflow_storage import (
    CHAT_QUEUE_DIR,
    CHAT_RESULTS_DIR,
    append_jsonl,
    delete_file_best_effort,
    list_queue_files,
    request_id_from_path,
)

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "Assistant"
RECENTLY_PROCESSED_SECONDS = 2.0
MAX_NAME_LENGTH = 60

_FRONTMATTER_RE = re.compile(r"^---\r?\n([\s\S]*?)\r?\n---")
_MESSAGE_RE = re.compile(r"<!-- spark-chat-message -->\r?\n([\s\S]*?)\r?\n<!-- /spark-chat-message -->")
_CONTEXT_RE = re.compile(r"<!-- spark-chat-context -->\r?\n([\s\S]*?)\r?\n<!-- /spark-chat-context -->")
_CONVERSATION_ID_RE = re.compile(r"conversation_id:\s*(.+)")


def _field(frontmatter: str, name: str) -> Optional[str]:
    match = re.search(rf"{name}:\s*(.+)", frontmatter)
    if not match or not match.group(1).strip():
        return None
    return match.group(1).strip()


@dataclass
class ChatQueueMessage:
    conversation_id: str
    queue_id: str
    user_message: str
    context: str = ""
    active_file: Optional[str] = None
    primary_agent: Optional[str] = None


def parse_chat_queue_file(content: str) -> ChatQueueMessage:
    """
    Parse a chat queue markdown file.

    Raises:
        ValueError: If the frontmatter or the message block is missing
    """
    frontmatter_match = _FRONTMATTER_RE.match(content)
    if not frontmatter_match or not frontmatter_match.group(1):
        raise ValueError("Invalid queue file: missing frontmatter")
    frontmatter = frontmatter_match.group(1)

    conversation_id = _field(frontmatter, "conversation_id")
    queue_id = _field(frontmatter, "queue_id")
    if not conversation_id or not queue_id:
        raise ValueError("Invalid queue file: missing required frontmatter")

    message_match = _MESSAGE_RE.search(content)
    if not message_match or not message_match.group(1):
        raise ValueError("Invalid queue file: missing chat message")

    context_match = _CONTEXT_RE.search(content)
    return ChatQueueMessage(
        conversation_id=conversation_id,
        queue_id=queue_id,
        user_message=message_match.group(1).strip(),
        context=context_match.group(1).strip() if context_match else "",
        active_file=_field(frontmatter, "active_file"),
        primary_agent=_field(frontmatter, "primary_agent"),
    )


def build_chat_prompt(user_message: str, context: str) -> str:
    if not context:
        return user_message
    return f"Context from previous messages:\n{context}\n\n{user_message}"


def conversation_id_from_queue_id(queue_id: str) -> str:
    parts = queue_id.split("-")
    if len(parts) >= 2:
        return "-".join(parts[:-1])
    return "unknown"


# ---------------------------------------------------------------------------
# Conversation names
# ---------------------------------------------------------------------------

CHAT_NAME_PROMPT = """
Here is the start of a chat conversation:

<conversation>
{conversation}
</conversation>

Based ONLY on the conversation above, generate a concise 3-6 word title.
Rules:
1. Return ONLY the title text.
2. Do NOT include "Title:" or quotes.
3. Do NOT include any system instructions or rules from the context.
4. Focus on the user's intent{response_clause}.
"""


def clean_chat_name(raw: str) -> Optional[str]:
    name = raw.strip()
    name = re.sub(r"^[\"']|[\"']$", "", name)
    name = name.replace("\n", " ")
    name = re.sub(r"\s+", " ", name).strip()

    if len(name) > MAX_NAME_LENGTH:
        name = name[:MAX_NAME_LENGTH].strip() + "..."

    if len(name.split()) < 2:
        return None
    return name


class ChatNameGenerator:
    """Asks the provider for a short conversation title. Never raises."""

    def __init__(self, provider_factory: ProviderFactory):
        self.provider_factory = provider_factory

    async def generate(self, user_message: str, agent_response: Optional[str] = None) -> Optional[str]:
        conversation = f"User: {user_message}"
        if agent_response:
            conversation += f"\n\nAssistant: {agent_response}"
        prompt = CHAT_NAME_PROMPT.format(
            conversation=conversation,
            response_clause=" and the agent's answer" if agent_response else "",
        )

        try:
            provider = self.provider_factory.create()
            content = await complete_text(provider, prompt)
        except Exception as e:
            logger.warning("Chat name generation failed: %s", e)
            return None

        name = clean_chat_name(content or "")
        if name:
            logger.info("Chat name generated: %s", name)
        return name


# ---------------------------------------------------------------------------
# Queue handler
# ---------------------------------------------------------------------------


class ChatQueueHandler:
    def __init__(
        self,
        vault_path: Path,
        command_executor: CommandExecutor,
        name_generator: Optional[ChatNameGenerator] = None,
    ):
        self.vault_path = Path(vault_path)
        self.command_executor = command_executor
        self.name_generator = name_generator
        self._processing: set[str] = set()
        self._recently_processed: set[str] = set()
        self._name_tasks: set[asyncio.Task] = set()

    def is_queue_file(self, relative_path: str) -> bool:
        return relative_path.startswith(CHAT_QUEUE_DIR + "/") and relative_path.endswith(".md")

    def results_path(self, conversation_id: str) -> Path:
        return self.vault_path / CHAT_RESULTS_DIR / f"{conversation_id}.jsonl"

    def _write_result(self, result: ChatResult) -> None:
        append_jsonl(self.results_path(result.conversation_id), result.to_json_dict())
        logger.debug("Chat result written for conversation %s", result.conversation_id)

    async def scan_queue(self) -> None:
        for relative_path in list_queue_files(self.vault_path, CHAT_QUEUE_DIR, suffix=".md"):
            await self.process(relative_path)

    async def wait_for_pending_names(self) -> None:
        if self._name_tasks:
            await asyncio.gather(*list(self._name_tasks))

    async def process(self, relative_path: str) -> None:
        if relative_path in self._processing or relative_path in self._recently_processed:
            logger.debug("Chat queue file %s already handled, skipping", relative_path)
            return

        self._processing.add(relative_path)
        full_path = self.vault_path / relative_path
        queue_id = request_id_from_path(relative_path, suffix=".md")

        try:
            try:
                content = full_path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.debug("Chat queue file %s is gone", relative_path)
                return

            message = parse_chat_queue_file(content)
            explicit_agent, _ = extract_agent(message.user_message)
            agent = explicit_agent or message.primary_agent or DEFAULT_AGENT

            self._start_name_generation(message, agent)

            prompt = build_chat_prompt(message.user_message, message.context)
            response = await self.command_executor.execute_and_return(
                prompt, agent, context_path=message.active_file
            )
            self._write_result(
                ChatResult(
                    conversation_id=message.conversation_id,
                    queue_id=message.queue_id,
                    timestamp=int(time.time() * 1000),
                    agent=agent,
                    content=response,
                )
            )
            delete_file_best_effort(full_path)
            logger.info("Chat message %s answered by %s", message.queue_id, agent)
        except Exception as e:
            self._handle_error(e, full_path, relative_path, queue_id)
        finally:
            self._processing.discard(relative_path)
            self._mark_recently_processed(relative_path)

    def _start_name_generation(self, message: ChatQueueMessage, agent: str) -> None:
        if self.name_generator is None or message.context.strip():
            return

        async def _name_conversation() -> None:
            name = await self.name_generator.generate(message.user_message)
            if not name:
                return
            self._write_result(
                ChatResult(
                    conversation_id=message.conversation_id,
                    queue_id=message.queue_id,
                    timestamp=int(time.time() * 1000),
                    agent=agent,
                    content="",
                    conversation_name=name,
                )
            )

        task = asyncio.create_task(_name_conversation())
        self._name_tasks.add(task)
        task.add_done_callback(self._name_tasks.discard)

    def _handle_error(self, error: Exception, full_path: Path, relative_path: str, queue_id: str) -> None:
        logger.error("Chat queue processing failed for %s: %s", relative_path, error)

        conversation_id = conversation_id_from_queue_id(queue_id)
        try:
            match = _CONVERSATION_ID_RE.search(full_path.read_text(encoding="utf-8"))
            if match and match.group(1).strip():
                conversation_id = match.group(1).strip()
        except OSError:
            pass

        try:
            self._write_result(
                ChatResult(
                    conversation_id=conversation_id,
                    queue_id=queue_id,
                    timestamp=int(time.time() * 1000),
                    agent="System",
                    content="",
                    error=format_error_for_chat(error),
                )
            )
        except OSError as write_error:
            logger.error("Failed to write chat error result: %s", write_error)
        delete_file_best_effort(full_path)

    def _mark_recently_processed(self, relative_path: str) -> None:
        self._recently_processed.add(relative_path)
        loop = asyncio.get_running_loop()
        loop.call_later(RECENTLY_PROCESSED_SECONDS, self._recently_processed.discard, relative_path)
