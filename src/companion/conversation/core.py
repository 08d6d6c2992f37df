"""
ChatCore: the turn orchestrator.

A ``ChatCore`` owns one ``HistoryStore``, one ``RecordStore``, a bound
``LLMProvider`` and a ``PluginRegistry``, and drives each conversation turn:

1. ``on_processing_start`` hooks (user-initiated turns only), then optional
   history compression.
2. Outbound request: system prompt + dynamic plugin info + history window +
   the new message, fitted into ``max_context_tokens``.
3. Backend call, then ``on_response_start`` hooks. The message and the raw
   reply are appended to the history.
4. Action markers in the reply are resolved by action plugins and spliced
   into the text, which is passed to the response handler.
5. A record is appended and ``on_processing_complete`` hooks fire
   (``on_processing_error`` instead if the backend call failed or the turn
   was cancelled).

Turn state machine::

    IDLE → AWAITING_BACKEND → ACTION_RESOLUTION → FINALIZING → IDLE
                  └──────────────┴──────────────┴──→ ERROR → IDLE

Every backend round of a turn counts against ``max_action_rounds``: rounds
fed back automatically (``feed_action_results``) and continuations an action
plugin awaits from inside the turn alike. A continuation awaited from inside
the turn joins it; one started from any other task queues on the turn lock
like a user turn and shares the budget of the turn it continues.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from functools import partial
from typing import Callable

from companion.config import Settings
from companion.conversation.markers import (
    ActionInvocation,
    format_action_results,
    resolve_markers,
)
from companion.conversation.messages import (
    HistoryStore,
    Message,
    Role,
    estimate_message_tokens,
    estimate_messages_tokens,
)
from companion.conversation.providers import (
    CompletionResult,
    LLMProvider,
    UsageStats,
    create_provider,
)
from companion.conversation.proxy import ProxyResolver
from companion.conversation.records import Record, RecordStore
from companion.conversation.storage import HistoryStorage, JsonHistoryStorage
from companion.errors import (
    ActionLoopError,
    BackendError,
    CapabilityError,
    ConfigurationError,
    PluginError,
)
from companion.plugins.base import ChannelModeDefinition, PluginDescriptor
from companion.plugins.registry import PluginRegistry, TurnContext

logger = logging.getLogger(__name__)

ResponseHandler = Callable[[str], None]

_SUMMARY_PROMPT = (
    "Summarise the conversation below in one short paragraph so that it can "
    "serve as context for later turns. Do not play any role and keep only "
    "the key facts.\n\n"
)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_BACKEND = "awaiting_backend"
    ACTION_RESOLUTION = "action_resolution"
    FINALIZING = "finalizing"
    ERROR = "error"


class ChatCore:
    """Orchestrates conversation turns against one chat backend.

    Attributes:
        provider: The bound chat backend.
        history: Live, editable message history.
        records: Append-only turn records.
        plugins: Registered plugins.
        proxy_resolver: Supplies per-category proxy settings.
        storage: Persistence backend for ``save_history`` / ``load_history``.
        system_prompt: Base system prompt, extended by dynamic plugin info.
        max_context_tokens: Budget for the whole outbound request
            (``0`` = unlimited).
        feed_action_results: Send action results back to the backend.
        max_action_rounds: Backend rounds a turn may add after its first.
        autosave: Save history after every successful turn.
        history_compression: Summarise older turns before a new user turn.
        compression_threshold: History length that triggers compression.
        last_usage: Backend token usage of the latest call, if reported.
        usage: Backend token usage summed over all calls.
    """

    def __init__(
        self,
        provider: LLMProvider,
        *,
        system_prompt: str = "",
        plugins: PluginRegistry | None = None,
        proxy_resolver: ProxyResolver | None = None,
        storage: HistoryStorage | None = None,
        max_context_tokens: int = 0,
        feed_action_results: bool = False,
        max_action_rounds: int = 3,
        autosave: bool = False,
        history_compression: bool = False,
        compression_threshold: int = 20,
    ) -> None:
        if max_action_rounds < 0:
            raise ValueError("max_action_rounds must be >= 0.")
        self.provider = provider
        self.history = HistoryStore()
        self.records = RecordStore()
        self.plugins = plugins if plugins is not None else PluginRegistry()
        self.proxy_resolver = proxy_resolver or ProxyResolver()
        self.storage = storage
        self.system_prompt = system_prompt
        self.max_context_tokens = max_context_tokens
        self.feed_action_results = feed_action_results
        self.max_action_rounds = max_action_rounds
        self.autosave = autosave
        self.history_compression = history_compression
        self.compression_threshold = compression_threshold
        self.last_usage: UsageStats | None = None
        self.usage = UsageStats()

        self._turn_lock = asyncio.Lock()
        # Task currently holding the turn lock.
        self._owner_task: asyncio.Task | None = None
        self._turn: TurnContext | None = None
        self._state = TurnState.IDLE
        self._response_handler: ResponseHandler | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: LLMProvider | None = None,
        storage: HistoryStorage | None = None,
    ) -> ChatCore:
        """Build a core (and, unless given, its provider and storage) from settings."""
        resolver = ProxyResolver(settings.proxy, default_type="chat")
        if provider is None:
            provider = create_provider(settings.llm, proxy=resolver.get_proxy("chat"))
        if storage is None:
            storage = JsonHistoryStorage(settings.history.data_dir)
        return cls(
            provider,
            system_prompt=settings.system_prompt,
            proxy_resolver=resolver,
            storage=storage,
            max_context_tokens=settings.history.max_context_tokens,
            feed_action_results=settings.actions.feed_action_results,
            max_action_rounds=settings.actions.max_action_rounds,
            autosave=settings.history.autosave,
            history_compression=settings.history.compression,
            compression_threshold=settings.history.compression_threshold,
        )

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def state(self) -> TurnState:
        return self._state

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def chat(self, prompt: str, is_function_call: bool = False) -> str:
        """Run one turn and return the final text.

        Args:
            prompt: The user's message, or an action result when
                *is_function_call* is set.
            is_function_call: Treat the call as a continuation of the current
                turn: ``on_processing_start`` is not fired again and the
                current turn's plugin contexts and round budget are reused.
                Awaited by an action plugin from inside the running turn, the
                call returns the continuation's text and leaves the record
                and ``on_processing_complete`` to that turn.

        Raises:
            ValueError: If *prompt* is empty.
            BackendError: If the backend call fails (after error hooks ran).
            ActionLoopError: If the turn needs more than ``max_action_rounds``
                extra backend rounds.
        """
        _check_prompt(prompt)
        if is_function_call:
            message = Message(role=Role.FUNCTION, content=prompt)
        else:
            message = Message(role=Role.USER, content=prompt)
        return await self._locked_turn(message, new_turn=not is_function_call)

    async def chat_with_image(
        self, prompt: str, image_data: bytes, mime: str = "image/png"
    ) -> str:
        """Run a multimodal turn with *image_data* attached to the user message.

        Raises:
            CapabilityError: If the bound backend does not accept images.
        """
        _check_prompt(prompt)
        if not image_data:
            raise ValueError("image_data must not be empty.")
        if not getattr(self.provider, "supports_images", False):
            raise CapabilityError(
                f"The {self.name} backend does not support image input.",
                backend=self.name,
                phase="chat_with_image",
            )
        message = Message(role=Role.USER, content=prompt, image=image_data, image_mime=mime)
        return await self._locked_turn(message, new_turn=True)

    async def _locked_turn(self, message: Message, new_turn: bool) -> str:
        if self._owner_task is not None and asyncio.current_task() is self._owner_task:
            # Awaited from inside the running turn (an action plugin).
            return await self._join_turn(message)
        async with self._turn_lock:
            self._owner_task = asyncio.current_task()
            try:
                return await self._run_turn(message, new_turn)
            finally:
                self._owner_task = None

    async def _join_turn(self, message: Message) -> str:
        assert self._turn is not None
        logger.info("Continuation within turn (%s): %r", self.name, message.content[:80])
        text = await self._run_rounds(self._turn, message)
        self._state = TurnState.ACTION_RESOLUTION
        return text

    async def _run_turn(self, message: Message, new_turn: bool) -> str:
        request = message.content
        if new_turn:
            turn = TurnContext()
            self._turn = turn
            logger.info("Turn started (%s): %r", self.name, message.content[:80])
            await self.plugins.notify_processing_start(turn, message.content)
        else:
            turn = self._turn or TurnContext()
            self._turn = turn
            logger.info("Continuation (%s): %r", self.name, message.content[:80])

        try:
            if new_turn:
                await self._maybe_compress()
            final_text = await self._run_rounds(turn, message)

            self._state = TurnState.FINALIZING
            self.records.append(
                Record(request=request, response=final_text, provider_name=self.name)
            )
            await self.plugins.notify_processing_complete(turn)
            if self.autosave and self.storage is not None:
                self.save_history()
            logger.info("Turn complete (%s): %d round(s)", self.name, turn.rounds)
            return final_text
        except BaseException as exc:
            self._state = TurnState.ERROR
            if isinstance(exc, asyncio.CancelledError):
                logger.warning("Turn cancelled (%s)", self.name)
            else:
                logger.error("Turn failed (%s): %s", self.name, exc)
            await self.plugins.notify_processing_error(turn, exc)
            raise
        finally:
            self._state = TurnState.IDLE

    async def _run_rounds(self, turn: TurnContext, message: Message) -> str:
        texts: list[str] = []
        while True:
            text, invocations = await self._run_round(turn, message)
            texts.append(text)
            if not (self.feed_action_results and invocations):
                return "\n".join(texts)
            message = Message(role=Role.FUNCTION, content=format_action_results(invocations))

    async def _run_round(
        self, turn: TurnContext, message: Message
    ) -> tuple[str, list[ActionInvocation]]:
        if turn.rounds > self.max_action_rounds:
            raise ActionLoopError(
                f"Action resolution exceeded {self.max_action_rounds} round(s).",
                backend=self.name,
                phase="action_resolution",
            )
        turn.rounds += 1

        self._state = TurnState.AWAITING_BACKEND
        outbound = self._compose(message)
        result = await self._complete(outbound)
        await self.plugins.notify_response_start(turn)

        # Recorded before actions run so a continuation issued by an action
        # plugin follows this exchange in the history.
        self.history.append(message)
        self.history.append(Message(role=Role.ASSISTANT, content=result.content))

        self._state = TurnState.ACTION_RESOLUTION
        text, invocations = await resolve_markers(
            result.content, partial(self._resolve_action, turn)
        )
        self._emit(text)
        return text, invocations

    async def _complete(self, messages: list[Message]) -> CompletionResult:
        result = await self.provider.complete(messages)
        if result.usage is not None:
            self.last_usage = result.usage
            self.usage = self.usage + result.usage
        return result

    def _compose(self, message: Message) -> list[Message]:
        system_parts = [self.system_prompt.strip(), self.plugins.get_dynamic_info()]
        system_text = "\n\n".join(p for p in system_parts if p)
        outbound: list[Message] = []
        if system_text:
            outbound.append(Message(role=Role.SYSTEM, content=system_text))

        budget = self.max_context_tokens
        if budget > 0:
            fixed = estimate_messages_tokens(outbound) + estimate_message_tokens(message)
            # window() reads 0 as unlimited; 1 keeps only the latest message.
            budget = max(budget - fixed, 1)
        outbound.extend(self.history.window(budget))
        outbound.append(message)
        return outbound

    async def _resolve_action(self, turn: TurnContext, name: str, arguments: str) -> str | None:
        try:
            return await self.plugins.invoke_action(name, arguments)
        except ActionLoopError:
            raise
        except Exception as exc:
            logger.error("Action plugin %r failed: %s", name, exc, exc_info=True)
            error = PluginError(name, "action", exc)
            turn.errors.append(error)
            await self.plugins.notify_processing_error(turn, error)
            return None

    def _emit(self, text: str) -> None:
        handler = self._response_handler
        if handler is None:
            return
        try:
            handler(text)
        except Exception as exc:
            logger.error("Response handler failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def compress_history(self) -> bool:
        """Fold the turns before the latest user message into one summary.

        The summary comes from the bound backend and replaces those turns as
        a single system message, in one ``update_history`` call. Returns
        ``False`` and leaves the history alone when there is nothing to
        summarise, the backend returns blank text, or the history changed
        while the summary was being produced.
        """
        snapshot = self.history.get_messages()
        last_user = next(
            (i for i in range(len(snapshot) - 1, -1, -1) if snapshot[i].role is Role.USER),
            None,
        )
        if last_user is None:
            return False
        older = [m for m in snapshot[:last_user] if m.content.strip()]
        if not older:
            return False

        transcript = "\n".join(f"{m.role.value}: {m.content}" for m in older)
        result = await self._complete(
            [Message(role=Role.USER, content=_SUMMARY_PROMPT + transcript)]
        )
        summary = result.content.strip()
        if not summary:
            logger.warning("History compression (%s): backend returned an empty summary", self.name)
            return False
        if self.history.get_messages() != snapshot:
            logger.info("History compression (%s): history changed, summary discarded", self.name)
            return False

        self.update_history([Message(role=Role.SYSTEM, content=summary)] + snapshot[last_user:])
        logger.info("History compressed (%s): %d message(s) summarised", self.name, len(older))
        return True

    async def _maybe_compress(self) -> None:
        if not self.history_compression or len(self.history) < self.compression_threshold:
            return
        try:
            await self.compress_history()
        except BackendError as exc:
            logger.warning("History compression failed (%s): %s", self.name, exc)

    def clear_context(self) -> None:
        """Discard the in-memory history; records are kept."""
        self.history.clear()
        logger.info("Context cleared (%s)", self.name)

    def get_history_for_editing(self) -> list[Message]:
        return self.history.get_messages()

    def update_history(self, edited: list[Message]) -> None:
        """Replace the whole history with *edited* in one step."""
        self.history.replace(edited)

    def get_chat_history(self) -> list[Message]:
        return self.history.get_messages()

    def set_chat_history(self, history: list[Message]) -> None:
        self.history.replace(history)

    def get_current_token_count(self) -> int:
        return self.history.token_count

    def save_history(self) -> None:
        storage = self._require_storage("save_history")
        storage.save(self.name, self.history.get_messages(), self.records.get_records())

    def load_history(self) -> None:
        storage = self._require_storage("load_history")
        messages, records = storage.load(self.name)
        self.history.replace(messages)
        self.records.restore(records)

    def _require_storage(self, phase: str) -> HistoryStorage:
        if self.storage is None:
            raise ConfigurationError("No history storage configured.", backend=self.name, phase=phase)
        return self.storage

    # ------------------------------------------------------------------
    # Plugins, proxy, presentation
    # ------------------------------------------------------------------

    def add_plugin(self, plugin: object) -> PluginDescriptor:
        return self.plugins.register(plugin)

    def remove_plugin(self, plugin: object) -> None:
        self.plugins.deregister(plugin)

    def get_custom_modes(self) -> list[ChannelModeDefinition]:
        return self.plugins.get_custom_modes()

    def get_proxy(self, request_type: str | None = None) -> str | None:
        return self.proxy_resolver.get_proxy(request_type)

    def set_response_handler(self, handler: ResponseHandler | None) -> None:
        self._response_handler = handler

    async def get_models(self) -> list[str]:
        list_models = getattr(self.provider, "list_models", None)
        if list_models is None:
            return []
        return await list_models()


def _check_prompt(prompt: str) -> None:
    if not prompt or not prompt.strip():
        raise ValueError("prompt must not be empty.")
