"""
Conversation orchestrator.

Turns a user action (send a message, regenerate the last answer) into the
store writes and inference calls it implies, and keeps a per-conversation
projection of what the UI shows: the persisted message list plus, while a
reply is streaming, one transient assistant message that grows per chunk.

Session lifecycle:
    IDLE → SENDING → STREAMING | COMPLETING → IDLE
    SENDING/STREAMING/COMPLETING → ERRORED → IDLE (after a fallback reply
    has been persisted)

One generation runs per conversation at a time. Precondition failures are
raised before anything is written.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from chatkeep.auth import IdentityProvider
from chatkeep.config import Settings, get_settings
from chatkeep.errors import (
    ConversationNotFoundError,
    CredentialMissingError,
    EmptyMessageError,
    GenerationInProgressError,
    InferenceError,
    ProviderNotConfiguredError,
    RegenerationNotAllowedError,
)
from chatkeep.llm import LLMProvider, create_provider
from chatkeep.llm.base import ChunkCallback
from chatkeep.models import Conversation, Message, ProviderConfig, User
from chatkeep.store import ConversationStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

FALLBACK_REPLY = (
    "Sorry, there was an error communicating with the inference provider. "
    "Please check your settings and try again."
)
NO_PROVIDER_REPLY = "Please configure an inference provider in the settings to use this feature."

STREAMING_MESSAGE_ID = "streaming"


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERRORED = "errored"


@dataclass
class ConversationSession:
    """In-memory projection of one open conversation."""
    conversation_id: str
    state: SessionState = SessionState.IDLE
    messages: List[Message] = field(default_factory=list)
    streaming_message: Optional[Message] = None
    task: Optional[asyncio.Task] = None


class ConversationOrchestrator:
    """
    Coordinates the store, the identity provider and the inference client.

    Args:
        store: Conversation store.
        identity: Source of the signed-in user.
        provider_factory: Builds a provider from (name, api_key=, base_url=,
            settings=); defaults to the registry in chatkeep.llm.
        settings: Application settings; defaults to get_settings().
    """

    def __init__(
        self,
        store: ConversationStore,
        identity: IdentityProvider,
        provider_factory: Callable[..., Optional[LLMProvider]] = create_provider,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.identity = identity
        self.settings = settings or get_settings()
        self._provider_factory = provider_factory
        self._sessions: Dict[str, ConversationSession] = {}
        # Keep references so background tasks are not garbage-collected
        self._background_tasks: Set[asyncio.Task] = set()

    # ============================================================
    # Session projection
    # ============================================================

    def session(self, conversation_id: str) -> ConversationSession:
        if conversation_id not in self._sessions:
            self._sessions[conversation_id] = ConversationSession(conversation_id)
        return self._sessions[conversation_id]

    def state(self, conversation_id: str) -> SessionState:
        return self.session(conversation_id).state

    def streaming_message(self, conversation_id: str) -> Optional[Message]:
        """The unsaved assistant message being streamed, if any."""
        return self.session(conversation_id).streaming_message

    async def open(self, conversation_id: str) -> List[Message]:
        """Load the persisted messages of a conversation into its session."""
        session = self.session(conversation_id)
        session.messages = await self.store.list_messages(conversation_id)
        return session.messages

    def forget(self, conversation_id: str) -> None:
        """Drop a conversation's session, abandoning any generation."""
        self.abandon(conversation_id)
        self._sessions.pop(conversation_id, None)

    # ============================================================
    # Helpers
    # ============================================================

    async def _owned_conversation(self, conversation_id: str, user: User) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user.id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _transcript(self, messages: List[Message]) -> List[Dict[str, str]]:
        transcript = [{"role": "system", "content": self.settings.system_prompt}]
        transcript.extend({"role": m.role, "content": m.content} for m in messages)
        return transcript

    def _provider_for(self, config: ProviderConfig) -> LLMProvider:
        provider = self._provider_factory(
            config.provider,
            api_key=config.api_key,
            base_url=config.base_url,
            settings=self.settings,
        )
        if provider is None:
            raise CredentialMissingError(f"Unknown provider: {config.provider}")
        return provider

    def _claim(self, conversation_id: str) -> ConversationSession:
        """Move an idle session to SENDING or reject the call."""
        session = self.session(conversation_id)
        if session.state is not SessionState.IDLE:
            raise GenerationInProgressError(
                f"A response is already being generated for {conversation_id}"
            )
        session.state = SessionState.SENDING
        return session

    async def _refresh(self, session: ConversationSession) -> None:
        session.messages = await self.store.list_messages(session.conversation_id)

    async def _run(
        self,
        session: ConversationSession,
        work: Awaitable[Optional[Message]],
    ) -> Optional[Message]:
        """Run a generation as the session's task.

        Returns None when the generation was abandoned.
        """
        task = asyncio.ensure_future(work)
        session.task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # Stay claimed until a pending final write has landed
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            session.task = None
            session.streaming_message = None
            session.state = SessionState.IDLE

        if task.cancelled():
            logger.info(f"Generation for {session.conversation_id} was abandoned")
            return None
        return task.result()

    async def _persist(self, write: Awaitable[T]) -> T:
        """Run a final store write to completion.

        Cancellation is re-raised only after the write has finished, so the
        session is never released while the reply is still being stored.
        """
        task = asyncio.ensure_future(write)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.warning(f"Final write after abandon failed: {task.exception()}")
            raise

    async def _generate(
        self,
        session: ConversationSession,
        user: User,
        app_scope: str,
        config: ProviderConfig,
        transcript: List[Dict[str, str]],
        streaming: bool,
        on_chunk: Optional[ChunkCallback],
    ) -> str:
        """Call the provider; inference failures become the fallback reply."""
        try:
            provider = self._provider_for(config)
            if streaming:
                session.state = SessionState.STREAMING
                session.streaming_message = Message(
                    id=STREAMING_MESSAGE_ID,
                    conversation_id=session.conversation_id,
                    user_id=user.id,
                    app_scope=app_scope,
                    content="",
                    is_user=False,
                    timestamp=datetime.now(timezone.utc),
                )

                async def relay(delta: str) -> None:
                    if session.streaming_message is not None:
                        session.streaming_message.content += delta
                    if on_chunk is not None:
                        result = on_chunk(delta)
                        if inspect.isawaitable(result):
                            await result

                return await provider.complete_streaming(transcript, relay)

            session.state = SessionState.COMPLETING
            return await provider.complete(transcript)
        except InferenceError as e:
            logger.error(
                f"Generation failed for conversation {session.conversation_id}: "
                f"{type(e).__name__}: {e}"
            )
            session.state = SessionState.ERRORED
            return FALLBACK_REPLY

    # ============================================================
    # Metadata derivation
    # ============================================================

    def _schedule_classification(
        self, conversation_id: str, content: str, config: ProviderConfig
    ) -> None:
        task = asyncio.create_task(self._classify(conversation_id, content, config))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _classify(self, conversation_id: str, content: str, config: ProviderConfig) -> None:
        try:
            provider = self._provider_for(config)
            metadata = await provider.classify(content)
            await self.store.set_conversation_metadata(
                conversation_id, metadata.summary, metadata.keywords
            )
            logger.info(f"Stored metadata for conversation {conversation_id}")
        except Exception as e:
            logger.warning(f"Metadata derivation for {conversation_id} failed: {e}")

    # ============================================================
    # Operations
    # ============================================================

    async def submit(
        self,
        conversation_id: str,
        text: str,
        streaming: bool = True,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Optional[Message]:
        """
        Send a user message and persist the assistant's reply.

        Args:
            conversation_id: Target conversation.
            text: Non-empty message text.
            streaming: Stream the reply chunk by chunk instead of one request.
            on_chunk: Called with each streamed delta, in order.

        Returns:
            The persisted assistant message, or None if the generation was
            abandoned.

        Raises:
            EmptyMessageError: text is empty or whitespace.
            GenerationInProgressError: a generation is already running here.
            NotAuthenticatedError: nobody is signed in.
            ProviderNotConfiguredError: no inference provider is selected.
            ConversationNotFoundError: unknown or foreign conversation.
        """
        if not text or not text.strip():
            raise EmptyMessageError("Message text must not be empty")

        session = self._claim(conversation_id)
        try:
            user = await self.identity.require_user()
            config = await self.store.get_provider_config(user.id)
            if config is None or not config.provider:
                raise ProviderNotConfiguredError("No inference provider selected")
            conversation = await self._owned_conversation(conversation_id, user)
            history = await self.store.list_messages(conversation_id)
        except BaseException:
            session.state = SessionState.IDLE
            raise

        async def work() -> Optional[Message]:
            user_message = await self.store.append_message(
                conversation_id, user.id, conversation.app_scope, text, True
            )
            session.messages = history + [user_message]

            if not history:
                self._schedule_classification(conversation_id, text, config)

            reply = await self._generate(
                session, user, conversation.app_scope, config,
                self._transcript(session.messages), streaming, on_chunk,
            )
            # A finished reply is stored even if abandon() arrives meanwhile
            try:
                assistant = await self._persist(self.store.append_message(
                    conversation_id, user.id, conversation.app_scope, reply, False
                ))
            except ConversationNotFoundError:
                logger.info(f"Conversation {conversation_id} was deleted; reply discarded")
                return None
            await self._refresh(session)
            return assistant

        return await self._run(session, work())

    async def regenerate(
        self,
        conversation_id: str,
        streaming: bool = True,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Optional[Message]:
        """
        Replace the latest assistant answer with a freshly generated one.

        The message keeps its id and position; only content and timestamp
        change. With no provider selected, the answer is replaced by an
        instruction to configure one and no request is made.

        Raises:
            GenerationInProgressError: a generation is already running here.
            NotAuthenticatedError: nobody is signed in.
            ConversationNotFoundError: unknown or foreign conversation.
            RegenerationNotAllowedError: the latest message is not an
                assistant answer to an earlier user message.
        """
        session = self._claim(conversation_id)
        try:
            user = await self.identity.require_user()
            conversation = await self._owned_conversation(conversation_id, user)
            messages = await self.store.list_messages(conversation_id)

            user_indexes = [i for i, m in enumerate(messages) if m.is_user]
            if not messages or messages[-1].is_user or not user_indexes:
                raise RegenerationNotAllowedError(
                    "Only an assistant answer that follows a user message can be regenerated"
                )
            config = await self.store.get_provider_config(user.id)
        except BaseException:
            session.state = SessionState.IDLE
            raise

        target = messages[-1]
        transcript = self._transcript(messages[: user_indexes[-1] + 1])
        session.messages = messages

        async def work() -> Optional[Message]:
            if config is None or not config.provider:
                reply = NO_PROVIDER_REPLY
            else:
                reply = await self._generate(
                    session, user, conversation.app_scope, config,
                    transcript, streaming, on_chunk,
                )
            updated = await self._persist(
                self.store.update_message_content(target.id, reply)
            )
            await self._refresh(session)
            return updated

        return await self._run(session, work())

    def abandon(self, conversation_id: str) -> bool:
        """
        Cancel the in-flight generation of a conversation.

        Partial streamed text is discarded and the session returns to IDLE.
        Returns True if there was a generation to cancel.
        """
        session = self._sessions.get(conversation_id)
        if session is None or session.task is None or session.task.done():
            return False
        session.task.cancel()
        session.streaming_message = None
        logger.info(f"Abandoning generation for {conversation_id}")
        return True

    async def close(self) -> None:
        """Wait for pending metadata derivations."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
