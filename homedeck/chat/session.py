"""Chat session state: threads, the per-thread message cache and agent turns."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from homedeck.chat.api import ChatApiClient
from homedeck.chat.cancellation import CancelRegistry, CancelToken
from homedeck.chat.errors import StreamError
from homedeck.chat.models import Message, StreamingMetadata, StreamRequest, Thread, now_ms
from homedeck.chat.stream import CANCELLED, FAILED, TRANSPORT, StreamConsumer, StreamOutcome
from homedeck.config import Settings, get_settings
from homedeck.notifications import Notifier, get_notifier

logger = logging.getLogger(__name__)


@dataclass
class StreamingState:
    """Transient rendering state of the turn currently streaming."""
    thread_id: Optional[str] = None
    content: str = ""
    metadata: Optional[StreamingMetadata] = None
    is_streaming: bool = False
    token: Optional[CancelToken] = None

    def begin(self, thread_id: str, token: CancelToken) -> None:
        self.thread_id = thread_id
        self.content = ""
        self.metadata = None
        self.is_streaming = True
        self.token = token

    def reset(self) -> None:
        self.thread_id = None
        self.content = ""
        self.metadata = None
        self.is_streaming = False
        self.token = None


class MessageCache:
    """Messages per thread id.

    An entry is created on the first load of a thread, kept current by the
    session's own turns and dropped only by an explicit reload or a delete.
    """

    def __init__(self):
        self._entries: dict[str, list[Message]] = {}

    def get(self, thread_id: str) -> Optional[list[Message]]:
        return self._entries.get(thread_id)

    def put(self, thread_id: str, messages: list[Message]) -> None:
        self._entries[thread_id] = list(messages)

    def invalidate(self, thread_id: str) -> None:
        self._entries.pop(thread_id, None)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._entries


class ChatSession:
    """Owns the thread list and runs agent turns against the dashboard API.

    At most one stream and one message load run per thread; starting another
    cancels the one in flight, so only one writer ever touches a thread's
    messages.
    """

    TITLE_PREVIEW_CHARS = 40

    def __init__(
        self,
        api: ChatApiClient,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.api = api
        self.notifier = notifier or get_notifier()
        self.default_model = settings.default_model
        self.default_tools = list(settings.default_enabled_tools)
        self.default_style = settings.default_agent_style
        self.idle_timeout = settings.stream_idle_timeout_seconds
        self.max_chars = settings.max_stream_chars

        self.threads: list[Thread] = []
        self.active_thread_id: Optional[str] = None
        self.cache = MessageCache()
        self.streams = CancelRegistry("stream")
        self.loads = CancelRegistry("message load")
        self.streaming = StreamingState()
        self._background: set[asyncio.Task] = set()

    # ==================== Thread state ====================

    def get_thread(self, thread_id: Optional[str]) -> Optional[Thread]:
        for thread in self.threads:
            if thread.id == thread_id:
                return thread
        return None

    @property
    def active_thread(self) -> Optional[Thread]:
        return self.get_thread(self.active_thread_id)

    def _set_messages(self, thread_id: str, messages: list[Message]) -> None:
        """Update both the thread and its cache entry."""
        thread = self.get_thread(thread_id)
        if thread is not None:
            thread.messages = list(messages)
        self.cache.put(thread_id, messages)

    def _append_message(self, thread_id: str, message: Message) -> None:
        thread = self.get_thread(thread_id)
        current = thread.messages if thread is not None else (self.cache.get(thread_id) or [])
        self._set_messages(thread_id, [*current, message])

    def _thread_from_api(self, row: dict) -> Thread:
        return Thread.from_api(
            row,
            default_tools=self.default_tools,
            default_model=self.default_model,
            default_style=self.default_style,
        )

    async def load_threads(self) -> list[Thread]:
        """Fetch the thread list. Cached messages are kept."""
        result = await self.api.list_threads()
        if not result.ok:
            self.notifier.error("Failed to load chats")
            return self.threads

        threads = [self._thread_from_api(row) for row in result.get("threads") or []]
        for thread in threads:
            cached = self.cache.get(thread.id)
            if cached is not None:
                thread.messages = list(cached)
        self.threads = threads
        return self.threads

    async def create_thread(self, title: str = "New Chat") -> Optional[Thread]:
        """Create a thread optimistically; the temporary one is rolled back on failure."""
        temp_id = f"temp_{now_ms()}"
        optimistic = Thread(
            id=temp_id,
            title=title,
            enabled_tools=list(self.default_tools),
            model=self.default_model,
            agent_style=self.default_style,
        )
        self.threads.insert(0, optimistic)
        self.active_thread_id = temp_id

        result = await self.api.create_thread(title)
        row = result.get("thread") if result.ok else None
        if not row:
            self.threads = [t for t in self.threads if t.id != temp_id]
            if self.active_thread_id == temp_id:
                self.active_thread_id = None
            self.notifier.error("Failed to create new chat")
            return None

        thread = self._thread_from_api(row)
        self.threads = [thread if t.id == temp_id else t for t in self.threads]
        if self.active_thread_id == temp_id:
            self.active_thread_id = thread.id
        self.cache.put(thread.id, [])
        return thread

    async def select_thread(self, thread_id: str) -> Optional[list[Message]]:
        """Switch threads. Work still running for the thread being left is aborted."""
        previous = self.active_thread_id
        if previous and previous != thread_id:
            self.stop(previous)
            self.loads.cancel(previous)
        self.active_thread_id = thread_id
        return await self.load_messages(thread_id)

    async def load_messages(self, thread_id: str, reload: bool = False) -> Optional[list[Message]]:
        """Return a thread's messages from the cache, or fetch them.

        A load supersedes any load already in flight for the same thread.
        Returns None when the load was superseded or failed.
        """
        if reload:
            self.cache.invalidate(thread_id)
        else:
            cached = self.cache.get(thread_id)
            if cached is not None:
                thread = self.get_thread(thread_id)
                if thread is not None:
                    thread.messages = list(cached)
                return cached

        token = self.loads.start(thread_id)
        try:
            cancelled, result = await token.race(self.api.list_messages(thread_id))
        finally:
            self.loads.finish(thread_id, token)

        if cancelled:
            logger.debug(f"Message load for {thread_id} was superseded")
            return None
        if not result.ok:
            self.notifier.error("Failed to load messages")
            return None

        messages = [Message.from_api(row) for row in result.get("messages") or []]
        self._set_messages(thread_id, messages)
        return messages

    # ==================== Agent turns ====================

    def _stream_request(self, thread: Thread, text: str, images: Optional[list[str]]) -> StreamRequest:
        return StreamRequest(
            input_as_text=text,
            images=images or None,
            model=thread.model or self.default_model,
            enabled_tools=thread.enabled_tools,
            thread_id=thread.id,
        )

    async def _run_stream(
        self,
        thread_id: str,
        request: StreamRequest,
        on_content: Optional[Callable[[str], None]] = None,
    ) -> StreamOutcome:
        """Run one agent stream for `thread_id`, superseding any stream already running."""
        token = self.streams.start(thread_id)
        self.streaming.begin(thread_id, token)

        def update_content(text: str) -> None:
            if self.streaming.token is token:
                self.streaming.content = text
            if on_content:
                on_content(text)

        def update_metadata(metadata: Optional[StreamingMetadata]) -> None:
            if self.streaming.token is token:
                self.streaming.metadata = metadata

        consumer = StreamConsumer(
            on_content=update_content,
            on_metadata=update_metadata,
            idle_timeout=self.idle_timeout,
            max_chars=self.max_chars,
        )

        async def stream_once() -> StreamOutcome:
            async with self.api.open_stream(request) as lines:
                return await consumer.consume(lines, token)

        try:
            cancelled, outcome = await token.race(stream_once())
            if cancelled:
                outcome = StreamOutcome(status=CANCELLED)
        except (StreamError, httpx.HTTPError) as e:
            outcome = StreamOutcome(status=FAILED, error=str(e) or "Request failed", error_source=TRANSPORT)
        finally:
            self.streams.finish(thread_id, token)
            if self.streaming.token is token:
                self.streaming.reset()

        if outcome.failed and outcome.error_source == TRANSPORT:
            self.notifier.error(f"Agent request failed: {outcome.error}")
        return outcome

    def _append_error(self, thread_id: str, outcome: StreamOutcome) -> Message:
        """Show a failed turn as a local assistant message.

        The message is cached with the thread so it survives switching away
        and back, but it is never written to the server.
        """
        message = Message(
            id=f"msg_{now_ms()}",
            role="assistant",
            content=f"Error: {outcome.error or 'Request failed'}",
            local=True,
            partial_content=outcome.content or None,
        )
        self._append_message(thread_id, message)
        return message

    @staticmethod
    def _enrich(message: Message, outcome: StreamOutcome, fallback_ms: Optional[int] = None) -> None:
        metadata = outcome.metadata
        duration = outcome.metrics.duration_ms if outcome.metrics else None
        if duration is None:
            duration = fallback_ms
        message.tools_used = outcome.resolved_tools or message.tools_used
        message.execution_time = duration
        message.latency_ms = duration
        if metadata is not None:
            message.model = metadata.model or message.model
            message.complexity = metadata.complexity or message.complexity
            message.routing = metadata.routing or message.routing
            message.tool_source = metadata.tool_source or message.tool_source
            message.available_models = metadata.models or message.available_models

    async def _finish_turn(self, thread_id: str, outcome: StreamOutcome) -> Optional[Message]:
        """Persist a completed turn and append it; surface failures; drop cancelled turns."""
        if outcome.cancelled:
            return None
        if outcome.failed:
            self._append_error(thread_id, outcome)
            return None

        result = await self.api.create_message(thread_id, "assistant", outcome.content)
        row = result.get("message") if result.ok else None
        if not row:
            self.notifier.error("Failed to save assistant reply")
            return None

        message = Message.from_api(row)
        self._enrich(message, outcome)
        self._append_message(thread_id, message)
        return message

    async def send_message(self, text: str, images: Optional[list[str]] = None) -> Optional[Message]:
        """Send a user turn and stream the assistant's reply into the active thread."""
        images = images or []
        if not text.strip() and not images:
            return None

        thread = self.active_thread
        if thread is None:
            thread = await self.create_thread()
            if thread is None:
                return None
        thread_id = thread.id
        is_first = not thread.messages

        user_result = await self.api.create_message(thread_id, "user", text)
        row = user_result.get("message") if user_result.ok else None
        if row:
            user_message = Message.from_api(row)
            user_message.images = list(images)
            self._append_message(thread_id, user_message)
            if is_first:
                thread.title = text[: self.TITLE_PREVIEW_CHARS]
                self._spawn(self._suggest_title(thread_id, text))
        else:
            self.notifier.error("Failed to save message")

        outcome = await self._run_stream(thread_id, self._stream_request(thread, text, images))
        return await self._finish_turn(thread_id, outcome)

    async def regenerate(self, index: int) -> Optional[Message]:
        """Re-run the user turn before `index` and overwrite the assistant message in place."""
        thread = self.active_thread
        if thread is None or index < 1 or index >= len(thread.messages):
            return None
        user_message = thread.messages[index - 1]
        if user_message.role != "user":
            return None

        target = thread.messages[index]
        original_content = target.content
        target.regenerating = True
        started = time.time()

        def overwrite(text: str) -> None:
            target.content = text

        request = self._stream_request(thread, user_message.content, user_message.images)
        outcome = await self._run_stream(thread.id, request, on_content=overwrite)

        if not outcome.completed:
            target.content = original_content
            target.regenerating = False
            if outcome.failed and outcome.error_source != TRANSPORT:
                self.notifier.error(f"Regeneration failed: {outcome.error}")
            return None

        result = await self.api.create_message(thread.id, "assistant", outcome.content)
        row = result.get("message") if result.ok else None
        if row:
            persisted = Message.from_api(row)
            target.id = persisted.id
            target.timestamp = persisted.timestamp
        else:
            self.notifier.error("Failed to save regenerated reply")

        target.content = outcome.content
        target.regenerating = False
        self._enrich(target, outcome, fallback_ms=int((time.time() - started) * 1000))
        self._set_messages(thread.id, thread.messages)
        return target

    async def edit_and_resend(self, index: int, text: str) -> Optional[Message]:
        """Replace the user message at `index`, drop everything after it and re-run."""
        text = text.strip()
        thread = self.active_thread
        if not text or thread is None or index < 0 or index >= len(thread.messages):
            return None
        if thread.messages[index].role != "user":
            return None

        kept = thread.messages[: index + 1]
        edited = kept[index].model_copy(update={"content": text})
        kept[index] = edited
        self._set_messages(thread.id, kept)

        outcome = await self._run_stream(thread.id, self._stream_request(thread, text, edited.images))
        return await self._finish_turn(thread.id, outcome)

    def stop(self, thread_id: Optional[str] = None) -> bool:
        """Cancel the stream running for a thread. Partial text is discarded."""
        thread_id = thread_id or self.streaming.thread_id or self.active_thread_id
        if not thread_id:
            return False
        stopped = self.streams.cancel(thread_id)
        if self.streaming.thread_id == thread_id:
            self.streaming.reset()
        return stopped

    # ==================== Thread operations ====================

    async def _patch(
        self,
        thread_id: str,
        changes: dict[str, Any],
        success: Optional[str] = None,
        failure: str = "Failed to update chat",
    ) -> bool:
        thread = self.get_thread(thread_id)
        if thread is None:
            return False

        result = await self.api.update_thread(thread_id, **changes)
        if not result.ok:
            self.notifier.error(failure)
            return False

        for key, value in changes.items():
            setattr(thread, key, value)
        if success:
            self.notifier.success(success)
        return True

    async def rename_thread(self, thread_id: str, title: str) -> bool:
        return await self._patch(thread_id, {"title": title})

    async def set_pinned(self, thread_id: str, pinned: bool) -> bool:
        return await self._patch(thread_id, {"pinned": pinned})

    async def set_archived(self, thread_id: str, archived: bool) -> bool:
        return await self._patch(thread_id, {"archived": archived})

    async def set_tags(self, thread_id: str, tags: list[str]) -> bool:
        return await self._patch(thread_id, {"tags": list(tags)}, failure="Failed to update tags")

    async def set_folder(self, thread_id: str, folder: Optional[str]) -> bool:
        return await self._patch(thread_id, {"folder": folder or None}, failure="Failed to update folder")

    async def set_enabled_tools(self, thread_id: str, tools: list[str]) -> bool:
        return await self._patch(
            thread_id,
            {"enabled_tools": list(tools)},
            success="Tools updated successfully",
            failure="Failed to update tools",
        )

    async def set_model(self, thread_id: str, model: str) -> bool:
        return await self._patch(
            thread_id, {"model": model}, success=f"Model changed to {model}", failure="Failed to update model"
        )

    async def set_agent_style(self, thread_id: str, style: str) -> bool:
        return await self._patch(
            thread_id,
            {"agent_style": style},
            success=f"Agent style changed to {style}",
            failure="Failed to update style",
        )

    async def delete_thread(self, thread_id: str) -> bool:
        self.stop(thread_id)
        self.loads.cancel(thread_id)

        result = await self.api.delete_thread(thread_id)
        if not result.ok:
            self.notifier.error("Failed to delete chat")
            return False

        self.threads = [t for t in self.threads if t.id != thread_id]
        self.cache.invalidate(thread_id)
        if self.active_thread_id == thread_id:
            self.active_thread_id = self.threads[0].id if self.threads else None
        return True

    async def share(self, thread_id: Optional[str] = None, expires_in_days: Optional[int] = None) -> Optional[str]:
        """Create a share link for a thread. Returns the URL."""
        thread_id = thread_id or self.active_thread_id
        if not thread_id:
            return None

        result = await self.api.share_thread(thread_id, expires_in_days)
        if not result.ok:
            self.notifier.error(f"Failed to create share link: {result.error}")
            return None

        self.notifier.success("Share link created successfully!")
        return result.get("shareUrl")

    async def branch(self, index: int) -> Optional[Thread]:
        """Copy messages 0..index of the active thread into a new thread."""
        source = self.active_thread
        if source is None or index < 0 or index >= len(source.messages):
            return None

        result = await self.api.create_thread(f"{source.title} (Branch)")
        row = result.get("thread") if result.ok else None
        if not row:
            self.notifier.error("Failed to create branch")
            return None

        branch = self._thread_from_api(row)
        branch.branched_from = source.id
        copied = [m.model_copy() for m in source.messages[: index + 1] if not m.local]

        failed = 0
        for message in copied:
            saved = await self.api.create_message(branch.id, message.role, message.content)
            if not saved.ok:
                failed += 1
        if failed:
            logger.warning(f"{failed} message(s) could not be copied to branch {branch.id}")
            self.notifier.error("Some messages could not be copied to the branch")

        self.threads.insert(0, branch)
        self._set_messages(branch.id, copied)
        self.active_thread_id = branch.id
        return branch

    # ==================== Background work ====================

    async def _suggest_title(self, thread_id: str, first_message: str) -> None:
        try:
            result = await self.api.suggest_title(thread_id, first_message=first_message)
            title = result.get("title") if result.ok else None
            if not title:
                logger.info(f"No title suggested for {thread_id}: {result.error}")
                return

            await self.api.update_thread(thread_id, title=title)
            thread = self.get_thread(thread_id)
            if thread is not None:
                thread.title = title
        except Exception as e:
            logger.exception(f"Title suggestion failed: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for background work such as title suggestions."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        self.streams.cancel_all()
        self.loads.cancel_all()
        for task in list(self._background):
            task.cancel()
        await self.wait_background()
        await self.api.close()
