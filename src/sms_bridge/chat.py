from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from itertools import count
from threading import Lock
from typing import Any, Protocol

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ChatClient(Protocol):
    def open_direct_message(self, user_id: str) -> str: ...

    def post_message(
        self,
        channel_id: str,
        text: str,
        *,
        thread_ts: str | None = None,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str: ...

    def post_ephemeral(self, user_id: str, text: str, *, channel_id: str | None = None) -> None: ...

    def publish_home_view(self, user_id: str, view: dict[str, Any]) -> None: ...

    def open_view(self, trigger_id: str, view: dict[str, Any]) -> None: ...


class StubChatClient:
    """Records chat calls instead of talking to a workspace."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ts_counter = count(1)
        self.posts: list[dict[str, Any]] = []
        self.ephemerals: list[dict[str, Any]] = []
        self.home_views: list[dict[str, Any]] = []
        self.opened_views: list[dict[str, Any]] = []
        self.opened_direct_messages: list[str] = []

    def open_direct_message(self, user_id: str) -> str:
        with self._lock:
            self.opened_direct_messages.append(user_id)
        return f"D{user_id}"

    def post_message(
        self,
        channel_id: str,
        text: str,
        *,
        thread_ts: str | None = None,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str:
        with self._lock:
            ts = f"{int(time.time())}.{next(self._ts_counter):06d}"
            self.posts.append(
                {"channel_id": channel_id, "text": text, "thread_ts": thread_ts, "blocks": blocks, "ts": ts}
            )
        return ts

    def post_ephemeral(self, user_id: str, text: str, *, channel_id: str | None = None) -> None:
        with self._lock:
            self.ephemerals.append({"user_id": user_id, "text": text, "channel_id": channel_id})

    def publish_home_view(self, user_id: str, view: dict[str, Any]) -> None:
        with self._lock:
            self.home_views.append({"user_id": user_id, "view": view})

    def open_view(self, trigger_id: str, view: dict[str, Any]) -> None:
        with self._lock:
            self.opened_views.append({"trigger_id": trigger_id, "view": view})

    def thread_posts(self, channel_id: str, thread_ts: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                post for post in self.posts if post["channel_id"] == channel_id and post["thread_ts"] == thread_ts
            ]


class SlackWebClient:
    """Chat client backed by the Slack Web API."""

    def __init__(
        self,
        *,
        bot_token: str,
        base_url: str = "https://slack.com/api",
        timeout_seconds: int = 10,
    ) -> None:
        stripped_token = bot_token.strip()
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_token:
            raise ValueError("bot_token must not be empty")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._bot_token = stripped_token
        self._base_url = stripped_url
        self._timeout_seconds = timeout_seconds

    def open_direct_message(self, user_id: str) -> str:
        data = self._call("conversations.open", {"users": user_id})
        channel = data.get("channel") or {}
        channel_id = channel.get("id")
        if not channel_id:
            raise ExternalServiceError("slack", "missing_channel", "conversations.open returned no channel id")
        return str(channel_id)

    def post_message(
        self,
        channel_id: str,
        text: str,
        *,
        thread_ts: str | None = None,
        blocks: list[dict[str, Any]] | None = None,
    ) -> str:
        payload: dict[str, Any] = {"channel": channel_id, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        if blocks:
            payload["blocks"] = blocks
        data = self._call("chat.postMessage", payload)
        ts = data.get("ts")
        if not ts:
            raise ExternalServiceError("slack", "missing_ts", "chat.postMessage returned no message timestamp")
        return str(ts)

    def post_ephemeral(self, user_id: str, text: str, *, channel_id: str | None = None) -> None:
        # Ephemeral messages need a channel; fall back to the user's DM.
        target_channel = channel_id or self.open_direct_message(user_id)
        self._call("chat.postEphemeral", {"channel": target_channel, "user": user_id, "text": text})

    def publish_home_view(self, user_id: str, view: dict[str, Any]) -> None:
        self._call("views.publish", {"user_id": user_id, "view": view})

    def open_view(self, trigger_id: str, view: dict[str, Any]) -> None:
        self._call("views.open", {"trigger_id": trigger_id, "view": view})

    def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a Web API method and return the decoded response.

        Slack answers HTTP 200 with ``{"ok": false, "error": ...}`` for most
        API-level failures, so both paths end in ``ExternalServiceError``.
        """
        request = urllib.request.Request(
            f"{self._base_url}/{method}",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._bot_token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                data = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise ExternalServiceError("slack", f"http_{exc.code}", f"{method} HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise ExternalServiceError("slack", "connection_error", f"{method} connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ExternalServiceError(
                "slack", "timeout", f"{method} timed out after {self._timeout_seconds}s"
            ) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ExternalServiceError("slack", "invalid_response", f"{method} returned invalid JSON") from exc

        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error", "unknown_error") if isinstance(data, dict) else "unknown_error"
            logger.warning("slack %s failed: %s", method, error)
            raise ExternalServiceError("slack", str(error), f"{method} failed: {error}")
        return data
