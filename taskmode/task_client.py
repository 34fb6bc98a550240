"""
HTTP client for the task-mode endpoint.

Builds the task prompt from the user's message and attached files, posts it
with httpx and exposes the streamed response body as async byte chunks for
the StreamConsumer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import httpx

from .config import Settings
from .observer import RequestObserver, ensure_observer
from .stream_consumer import ProgressUpdate, StreamConsumer, StreamOutcome, StreamResult


logger = logging.getLogger(__name__)

RAW_FILE_LIMIT = 50000
REF_FILE_LIMIT = 20000
HISTORY_TURNS = 2


class TaskClientError(Exception):
    """Raised when the task endpoint cannot be reached or rejects the request."""
    pass


@dataclass
class SourceFile:
    """A file attached to a task; content is already extracted text."""
    name: str
    content: str


def build_task_prompt(task: str, raw_files: Sequence[SourceFile] = (), ref_files: Sequence[SourceFile] = ()) -> str:
    """The message sent to the endpoint: task, data files, reference files."""
    raw_context = "\n\n".join(
        f"[FILE_{i}: {f.name}]\n{f.content[:RAW_FILE_LIMIT]}" for i, f in enumerate(raw_files, 1)
    )
    ref_context = "\n\n".join(
        f"[REF_FILE_{i}: {f.name}]\n{f.content[:REF_FILE_LIMIT]}" for i, f in enumerate(ref_files, 1)
    )
    return (
        f"TASK: {task}\n\n=== ATTACHED DATA FILES ===\n{raw_context}"
        f"\n\n=== REFERENCE FILES ===\n{ref_context}"
    )


def history_payload(history: Optional[Sequence[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Last turns in the {role, parts: [{text}]} shape the endpoint accepts."""
    turns = []
    for turn in list(history or [])[-HISTORY_TURNS:]:
        if not isinstance(turn, dict) or not turn.get("role"):
            continue
        if isinstance(turn.get("parts"), list) and turn["parts"]:
            turns.append({"role": turn["role"], "parts": turn["parts"]})
        elif turn.get("text"):
            turns.append({"role": turn["role"], "parts": [{"text": str(turn["text"])}]})
    return turns


def append_turns(history: Optional[Sequence[Dict[str, Any]]], message: str, result: StreamResult) -> List[Dict[str, Any]]:
    """History after one exchange; cancelled requests add only the user turn."""
    updated = list(history or []) + [{"role": "user", "text": message}]
    if result.outcome == StreamOutcome.COMPLETED:
        updated.append({"role": "model", "text": result.display_text, "output": result.document})
    return updated


@dataclass
class TaskClientConfig:
    """Connection settings for the task endpoint."""
    api_url: str = "http://localhost:3000/api/task"
    timeout: float = 300.0
    key_index: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskClientConfig":
        return cls(api_url=settings.api_url, timeout=settings.timeout)


class TaskClient:
    """Posts tasks and streams the raw response body."""

    def __init__(self, config: Optional[TaskClientConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or TaskClientConfig.from_settings(Settings.from_env())
        self.transport = transport

    def _payload(self, message, history, key_index, user_profile) -> Dict[str, Any]:
        payload = {
            "history": history_payload(history),
            "message": message,
            "keyIndex": self.config.key_index if key_index is None else key_index,
        }
        if user_profile is not None:
            payload["userProfile"] = user_profile
        return payload

    async def stream_task(
        self,
        message: str,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        key_index: Optional[int] = None,
        user_profile: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield response body chunks as they arrive."""
        payload = self._payload(message, history, key_index, user_profile)
        logger.info("Posting task to %s (%d chars, %d history turns)",
                    self.config.api_url, len(message), len(payload["history"]))

        async with httpx.AsyncClient(timeout=self.config.timeout, transport=self.transport) as client:
            try:
                async with client.stream("POST", self.config.api_url, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise TaskClientError(
                            f"Task endpoint returned {response.status_code}: {body[:200]}"
                        )
                    async for chunk in response.aiter_bytes():
                        yield chunk
            except httpx.HTTPError as e:
                raise TaskClientError(f"Task request failed: {e}") from e


async def run_task(
    task: str,
    raw_files: Sequence[SourceFile] = (),
    ref_files: Sequence[SourceFile] = (),
    history: Optional[Sequence[Dict[str, Any]]] = None,
    settings: Optional[Settings] = None,
    client: Optional[TaskClient] = None,
    on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    observer: Optional[RequestObserver] = None,
) -> StreamResult:
    """Send one task and consume its streamed report."""
    settings = settings or Settings.from_env()
    client = client or TaskClient(TaskClientConfig.from_settings(settings))
    obs = ensure_observer(observer, "task")

    message = build_task_prompt(task, raw_files, ref_files)
    obs.log("TASK_SEND", "Sending task", {
        "prompt_length": len(message),
        "raw_files": len(raw_files),
        "ref_files": len(ref_files),
    })

    consumer = StreamConsumer.from_settings(settings, on_progress=on_progress)
    result = await consumer.consume(
        client.stream_task(message, history=history),
        cancel_event=cancel_event,
        observer=obs,
    )
    obs.log("TASK_DONE", "Task finished", {"outcome": result.outcome.value, "phase": result.phase})
    return result
