"""Tests for chat session state: turns, cancellation, caching and thread operations."""

import asyncio
import json
import os
import unittest
from datetime import datetime, timezone

import httpx

os.environ.setdefault("HA_URL", "http://localhost:8123")
os.environ.setdefault("HA_TOKEN", "test_token")

BASE_URL = "http://dashboard.test"


def data(obj) -> str:
    return f"data: {json.dumps(obj)}\n"


class FakeDashboard:
    """In-memory stand-in for the dashboard's chat and agent endpoints."""

    def __init__(self):
        self.requests = []
        self.threads = {}
        self.messages = []
        self.stream_lines = []
        self.stream_status = 200
        self.gate = None  # asyncio.Event holding the stream open after its lines
        self.fail = set()
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    async def _stream_body(self):
        for line in self.stream_lines:
            yield line.encode()
            await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()

    def posted_messages(self, role=None):
        return [
            body for method, path, body in self.requests
            if method == "POST" and path == "/api/chat/messages"
            and (role is None or body["role"] == role)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        key = (request.method, path)

        if key in self.fail:
            return httpx.Response(500, json={"ok": False, "error": "server error"})

        if key == ("POST", "/api/agent/smart-stream"):
            if self.stream_status != 200:
                return httpx.Response(self.stream_status, text="upstream failure")
            return httpx.Response(
                200, headers={"Content-Type": "text/event-stream"}, content=self._stream_body()
            )

        if key == ("GET", "/api/chat/threads"):
            return httpx.Response(200, json={"ok": True, "threads": list(self.threads.values())})

        if key == ("POST", "/api/chat/threads"):
            row = {"id": self._next_id("thread"), "title": body.get("title", "New Chat"),
                   "created_at": self._now(), "pinned": False, "archived": False, "tags": []}
            self.threads[row["id"]] = row
            return httpx.Response(200, json={"ok": True, "thread": row})

        if key == ("GET", "/api/chat/messages"):
            thread_id = request.url.params.get("thread_id")
            rows = [m for m in self.messages if m["thread_id"] == thread_id]
            return httpx.Response(200, json={"ok": True, "messages": rows})

        if key == ("POST", "/api/chat/messages"):
            row = {"id": self._next_id("msg"), "created_at": self._now(), **body}
            self.messages.append(row)
            return httpx.Response(200, json={"ok": True, "message": row})

        if path.endswith("/suggest-title"):
            return httpx.Response(200, json={"ok": True, "title": "Kitchen lights"})

        if path.endswith("/share") and request.method == "POST":
            return httpx.Response(200, json={"ok": True, "shareUrl": f"{BASE_URL}/shared/abc", "token": "abc"})

        if path.startswith("/api/chat/threads/") and request.method == "PATCH":
            thread_id = path.rsplit("/", 1)[-1]
            self.threads.get(thread_id, {}).update(body)
            return httpx.Response(200, json={"ok": True, "thread": self.threads.get(thread_id)})

        if path.startswith("/api/chat/threads/") and request.method == "DELETE":
            self.threads.pop(path.rsplit("/", 1)[-1], None)
            return httpx.Response(200, json={"ok": True})

        return httpx.Response(404, json={"ok": False, "error": "not found"})


class SessionTestCase(unittest.TestCase):
    """Base class wiring a ChatSession to a FakeDashboard."""

    def setUp(self):
        from homedeck.config import Settings
        from homedeck.notifications import Notifier

        self.server = FakeDashboard()
        self.notifier = Notifier()
        self.settings = Settings(stream_idle_timeout_seconds=5, max_stream_chars=10_000)

    def make_session(self):
        from homedeck.chat.api import ChatApiClient
        from homedeck.chat.session import ChatSession

        client = httpx.AsyncClient(transport=httpx.MockTransport(self.server.handler))
        api = ChatApiClient(base_url=BASE_URL, client=client)
        return ChatSession(api, notifier=self.notifier, settings=self.settings), client

    def run_session(self, scenario):
        """Run `scenario(session)` on a fresh session and close everything afterwards."""
        async def run_test():
            session, client = self.make_session()
            try:
                return await scenario(session)
            finally:
                await session.close()
                await client.aclose()

        return asyncio.run(run_test())

    def error_toasts(self):
        return [t.message for t in self.notifier.history(level="error")]


class TestSendMessage(SessionTestCase):
    """Tests for a full send/stream/persist turn."""

    def test_send_persists_and_enriches_reply(self):
        """Test a completed turn is saved and enriched with stream metadata."""
        self.server.stream_lines = [
            data({"metadata": {"model": "gpt-5", "complexity": "simple", "routing": "direct",
                               "tools": ["a", "b"], "toolSource": "planner"}}),
            data({"delta": "Hel"}),
            data({"delta": "lo, "}),
            data({"delta": "world"}),
            data({"tools": ["c"]}),
            data({"done": True, "metrics": {"durationMs": 321}}),
        ]

        async def scenario(session):
            reply = await session.send_message("Turn on the kitchen lights")
            await session.wait_background()
            return session, reply

        session, reply = self.run_session(scenario)

        self.assertEqual(reply.content, "Hello, world")
        self.assertEqual(reply.tools_used, ["c"])
        self.assertEqual(reply.model, "gpt-5")
        self.assertEqual(reply.complexity, "simple")
        self.assertEqual(reply.routing, "direct")
        self.assertEqual(reply.tool_source, "planner")
        self.assertEqual(reply.execution_time, 321)
        self.assertTrue(reply.id.startswith("msg_"))

        thread = session.active_thread
        self.assertEqual([m.role for m in thread.messages], ["user", "assistant"])
        self.assertEqual(session.cache.get(thread.id)[-1].content, "Hello, world")
        self.assertEqual(thread.title, "Kitchen lights")
        self.assertFalse(session.streaming.is_streaming)
        self.assertEqual(session.streaming.content, "")

        self.assertEqual(len(self.server.posted_messages("assistant")), 1)
        stream_body = next(b for m, p, b in self.server.requests if p == "/api/agent/smart-stream")
        self.assertEqual(stream_body["input_as_text"], "Turn on the kitchen lights")
        self.assertEqual(stream_body["thread_id"], thread.id)
        self.assertEqual(stream_body["model"], "gpt-5-mini")
        self.assertNotIn("images", stream_body)

    def test_empty_message_is_ignored(self):
        """Test empty messages are not sent."""
        async def scenario(session):
            return await session.send_message("   ")

        self.assertIsNone(self.run_session(scenario))
        self.assertEqual(self.server.requests, [])

    def test_images_are_sent_with_turn(self):
        """Test attached images are sent with the turn."""
        self.server.stream_lines = [data({"delta": "A cat"})]

        async def scenario(session):
            await session.send_message("What is this?", images=["data:image/png;base64,AAAA"])
            return session

        session = self.run_session(scenario)

        stream_body = next(b for m, p, b in self.server.requests if p == "/api/agent/smart-stream")
        self.assertEqual(stream_body["images"], ["data:image/png;base64,AAAA"])
        self.assertEqual(session.active_thread.messages[0].images, ["data:image/png;base64,AAAA"])

    def test_cancel_discards_partial_content(self):
        """Test cancelling a turn discards the partial reply."""
        self.server.stream_lines = [data({"delta": "Hel"}), data({"delta": "lo"})]

        async def scenario(session):
            self.server.gate = asyncio.Event()
            task = asyncio.create_task(session.send_message("Hi"))
            while session.streaming.content != "Hello":
                await asyncio.sleep(0.01)
            self.assertTrue(session.stop())
            self.assertFalse(session.streaming.is_streaming)
            result = await asyncio.wait_for(task, 2)
            return session, result

        session, result = self.run_session(scenario)

        self.assertIsNone(result)
        self.assertEqual(self.server.posted_messages("assistant"), [])
        self.assertEqual([m.role for m in session.active_thread.messages], ["user"])
        self.assertEqual(self.error_toasts(), [])

    def test_error_event_appends_local_error_message(self):
        """Test an error event adds a local error message."""
        self.server.stream_lines = [data({"delta": "Checking"}), data({"error": "tool crashed"})]

        async def scenario(session):
            await session.send_message("Lock the door")
            return session

        session = self.run_session(scenario)

        last = session.active_thread.messages[-1]
        self.assertEqual(last.role, "assistant")
        self.assertEqual(last.content, "Error: tool crashed")
        self.assertEqual(last.partial_content, "Checking")
        self.assertTrue(last.local)
        self.assertEqual(self.server.posted_messages("assistant"), [])
        self.assertIn(last, session.cache.get(session.active_thread_id))

    def test_error_message_survives_switching_threads(self):
        """Test that a local error message is still shown after leaving and reselecting its thread."""
        self.server.stream_lines = [data({"error": "tool crashed"})]

        async def scenario(session):
            await session.send_message("Lock the door")
            failed_id = session.active_thread_id
            await session.create_thread("Other")
            return await session.select_thread(failed_id)

        messages = self.run_session(scenario)

        self.assertEqual([m.content for m in messages], ["Lock the door", "Error: tool crashed"])
        self.assertTrue(messages[-1].local)
        self.assertEqual(
            [r for r in self.server.requests if r[0] == "GET" and r[1] == "/api/chat/messages"], []
        )

    def test_transport_failure_notifies(self):
        """Test an agent transport failure raises a toast."""
        self.server.stream_status = 502

        async def scenario(session):
            await session.send_message("Hello")
            return session

        session = self.run_session(scenario)

        self.assertTrue(any(m.startswith("Agent request failed") for m in self.error_toasts()))
        self.assertTrue(session.active_thread.messages[-1].local)

    def test_failed_user_save_still_streams(self):
        """Test the turn still streams when saving the user message fails."""
        self.server.fail.add(("POST", "/api/chat/messages"))
        self.server.stream_lines = [data({"delta": "Hi"})]

        async def scenario(session):
            return await session.send_message("Hello")

        self.assertIsNone(self.run_session(scenario))
        self.assertIn("Failed to save message", self.error_toasts())
        self.assertIn("Failed to save assistant reply", self.error_toasts())

    def test_new_stream_supersedes_running_one(self):
        """Test a new turn cancels the one already running."""
        self.server.stream_lines = [data({"delta": "first"})]

        async def scenario(session):
            await session.create_thread()
            self.server.gate = asyncio.Event()
            first = asyncio.create_task(session.send_message("one"))
            while session.streaming.content != "first":
                await asyncio.sleep(0.01)
            first_token = session.streams.get(session.active_thread_id)

            self.server.gate = None
            self.server.stream_lines = [data({"delta": "second"})]
            second = await session.send_message("two")
            return first_token, await asyncio.wait_for(first, 2), second

        first_token, first, second = self.run_session(scenario)

        self.assertTrue(first_token.cancelled)
        self.assertIsNone(first)
        self.assertEqual(second.content, "second")
        self.assertEqual(len(self.server.posted_messages("assistant")), 1)


class TestThreads(SessionTestCase):
    """Tests for thread creation, loading and metadata updates."""

    def test_create_thread_failure_rolls_back(self):
        """Test a failed thread creation removes the temporary thread."""
        self.server.fail.add(("POST", "/api/chat/threads"))

        async def scenario(session):
            thread = await session.create_thread()
            return session, thread

        session, thread = self.run_session(scenario)

        self.assertIsNone(thread)
        self.assertEqual(session.threads, [])
        self.assertIsNone(session.active_thread_id)
        self.assertIn("Failed to create new chat", self.error_toasts())

    def test_create_thread_replaces_temporary(self):
        """Test the temporary thread is replaced by the created one."""
        async def scenario(session):
            thread = await session.create_thread("Plans")
            return session, thread

        session, thread = self.run_session(scenario)

        self.assertFalse(thread.is_temporary)
        self.assertEqual([t.id for t in session.threads], [thread.id])
        self.assertEqual(session.active_thread_id, thread.id)
        self.assertEqual(thread.enabled_tools, self.settings.default_enabled_tools)

    def test_load_messages_uses_cache_until_reload(self):
        """Test message loads hit the cache until a reload."""
        self.server.threads["thread_a"] = {"id": "thread_a", "title": "A"}
        self.server.messages.append(
            {"id": "msg_1", "thread_id": "thread_a", "role": "user", "content": "hi",
             "created_at": "2026-01-02T03:04:05Z"}
        )

        async def scenario(session):
            await session.load_threads()
            first = await session.load_messages("thread_a")
            second = await session.load_messages("thread_a")
            reloaded = await session.load_messages("thread_a", reload=True)
            return first, second, reloaded

        first, second, reloaded = self.run_session(scenario)

        loads = [r for r in self.server.requests if r[1] == "/api/chat/messages"]
        self.assertEqual(len(loads), 2)
        self.assertEqual(first[0].content, "hi")
        self.assertEqual(second[0].id, "msg_1")
        self.assertEqual(reloaded[0].timestamp, 1767323045000)

    def test_load_messages_failure_notifies(self):
        """Test a failed message load raises a toast."""
        self.server.fail.add(("GET", "/api/chat/messages"))

        async def scenario(session):
            return await session.load_messages("thread_x")

        self.assertIsNone(self.run_session(scenario))
        self.assertIn("Failed to load messages", self.error_toasts())

    def test_load_threads_failure_keeps_state(self):
        """Test a failed thread list load keeps the current threads."""
        self.server.fail.add(("GET", "/api/chat/threads"))

        async def scenario(session):
            return await session.load_threads()

        self.assertEqual(self.run_session(scenario), [])
        self.assertIn("Failed to load chats", self.error_toasts())

    def test_set_model_updates_thread_and_notifies(self):
        """Test changing the model updates the thread and confirms."""
        async def scenario(session):
            thread = await session.create_thread()
            ok = await session.set_model(thread.id, "gpt-5")
            return ok, session.get_thread(thread.id)

        ok, thread = self.run_session(scenario)

        self.assertTrue(ok)
        self.assertEqual(thread.model, "gpt-5")
        success = [t.message for t in self.notifier.history(level="success")]
        self.assertIn("Model changed to gpt-5", success)

    def test_rename_thread_patches_title(self):
        """Test that renaming sends the new title and updates the thread."""
        async def scenario(session):
            thread = await session.create_thread()
            ok = await session.rename_thread(thread.id, "Garage door")
            return ok, session.get_thread(thread.id)

        ok, thread = self.run_session(scenario)

        self.assertTrue(ok)
        self.assertEqual(thread.title, "Garage door")
        patches = [r for r in self.server.requests if r[0] == "PATCH"]
        self.assertEqual(patches, [("PATCH", f"/api/chat/threads/{thread.id}", {"title": "Garage door"})])

    def test_rename_missing_thread_sends_nothing(self):
        """Test that renaming an unknown thread makes no request."""
        async def scenario(session):
            return await session.rename_thread("thread_missing", "x")

        self.assertFalse(self.run_session(scenario))
        self.assertEqual([r for r in self.server.requests if r[0] == "PATCH"], [])

    def test_delete_thread_selects_next(self):
        """Test deleting the active thread selects the next one."""
        async def scenario(session):
            older = await session.create_thread("older")
            newer = await session.create_thread("newer")
            await session.delete_thread(newer.id)
            return session, older

        session, older = self.run_session(scenario)

        self.assertEqual(session.active_thread_id, older.id)

    def test_share_returns_url(self):
        """Test sharing returns the share URL."""
        async def scenario(session):
            await session.create_thread()
            return await session.share()

        self.assertEqual(self.run_session(scenario), f"{BASE_URL}/shared/abc")


class TestReplay(SessionTestCase):
    """Tests for regenerate, edit-and-resend and branching."""

    def _seed(self, session):
        from homedeck.chat.models import Message, Thread

        thread = Thread(id="thread_1", title="Lights", messages=[
            Message(id="m1", role="user", content="first question"),
            Message(id="m2", role="assistant", content="first answer", model="old-model",
                    complexity="simple"),
            Message(id="m3", role="user", content="second question"),
            Message(id="m4", role="assistant", content="second answer"),
        ])
        session.threads = [thread]
        session.active_thread_id = thread.id
        session.cache.put(thread.id, thread.messages)
        return thread

    def test_regenerate_overwrites_in_place(self):
        """Test regenerate replaces the assistant message in place."""
        self.server.stream_lines = [data({"delta": "better "}), data({"delta": "answer"})]

        async def scenario(session):
            thread = self._seed(session)
            message = await session.regenerate(1)
            return thread, message

        thread, message = self.run_session(scenario)

        self.assertEqual(len(thread.messages), 4)
        self.assertIs(thread.messages[1], message)
        self.assertEqual(message.content, "better answer")
        self.assertFalse(message.regenerating)
        self.assertTrue(message.id.startswith("msg_"))
        # No new metadata: the old enrichment survives
        self.assertEqual(message.model, "old-model")
        self.assertIsNotNone(message.execution_time)
        stream_body = next(b for m, p, b in self.server.requests if p == "/api/agent/smart-stream")
        self.assertEqual(stream_body["input_as_text"], "first question")

    def test_regenerate_failure_restores_content(self):
        """Test a failed regenerate restores the original reply."""
        self.server.stream_lines = [data({"delta": "half"}), data({"error": "overloaded"})]

        async def scenario(session):
            thread = self._seed(session)
            result = await session.regenerate(3)
            return thread, result

        thread, result = self.run_session(scenario)

        self.assertIsNone(result)
        self.assertEqual(thread.messages[3].content, "second answer")
        self.assertFalse(thread.messages[3].regenerating)
        self.assertIn("Regeneration failed: overloaded", self.error_toasts())

    def test_regenerate_rejects_user_message(self):
        """Test regenerate refuses user messages."""
        async def scenario(session):
            self._seed(session)
            return await session.regenerate(2)

        self.assertIsNone(self.run_session(scenario))

    def test_edit_and_resend_truncates(self):
        """Test editing a message drops everything after it."""
        self.server.stream_lines = [data({"content": "edited answer"})]

        async def scenario(session):
            thread = self._seed(session)
            reply = await session.edit_and_resend(0, "edited question")
            return thread, reply

        thread, reply = self.run_session(scenario)

        self.assertEqual(
            [m.content for m in thread.messages],
            ["edited question", "edited answer"],
        )
        self.assertEqual(reply.content, "edited answer")

    def test_branch_copies_prefix(self):
        """Test branching copies messages up to the chosen one."""
        async def scenario(session):
            self._seed(session)
            branch = await session.branch(1)
            return session, branch

        session, branch = self.run_session(scenario)

        self.assertEqual(branch.title, "Lights (Branch)")
        self.assertEqual(branch.branched_from, "thread_1")
        self.assertEqual([m.content for m in branch.messages], ["first question", "first answer"])
        self.assertEqual(session.active_thread_id, branch.id)
        self.assertEqual(len(self.server.posted_messages()), 2)


class TestExportAndAttachments(unittest.TestCase):
    """Tests for markdown export and image data URLs."""

    def test_export_markdown(self):
        """Test exporting a thread as markdown."""
        from homedeck.chat.export import export_markdown
        from homedeck.chat.models import Message, Thread

        thread = Thread(id="thread_1", title="Evening", messages=[
            Message(id="m1", role="user", content="Dim the lights"),
            Message(id="m2", role="assistant", content="Done.", tools_used=["home_assistant"],
                    execution_time=1500),
        ])

        text = export_markdown(thread)

        self.assertTrue(text.startswith("# Evening\n"))
        self.assertIn("**Messages**: 2", text)
        self.assertIn("`thread_1`", text)
        self.assertIn("## 👤 User", text)
        self.assertIn("## 🤖 Assistant", text)
        self.assertIn("> 🔧 **Tools used**: home_assistant", text)
        self.assertIn("> ⏱️ **Execution time**: 1.50s", text)
        self.assertIn("*Exported from HomeDeck*", text)

    def test_to_data_url_from_bytes(self):
        """Test building a data URL from raw bytes."""
        from homedeck.chat.attachments import to_data_url

        self.assertEqual(to_data_url(b"abc", "image/png"), "data:image/png;base64,YWJj")

    def test_to_data_url_guesses_mime_type(self):
        """Test the data URL MIME type is guessed from the file name."""
        import tempfile
        from pathlib import Path

        from homedeck.chat.attachments import is_image, to_data_url

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "photo.jpg"
            path.write_bytes(b"\xff\xd8")
            url = to_data_url(path)

        self.assertTrue(url.startswith("data:image/jpeg;base64,"))
        self.assertTrue(is_image("image/jpeg"))


if __name__ == "__main__":
    unittest.main()
