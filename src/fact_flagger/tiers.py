"""Model tiers — the on-device (local) model and the remote classifier.

Both are specified by small protocols so that any backend can be plugged
in; the concrete adapters here talk to a local Ollama server and to a
fact-flagger sidecar (``server.py``) over HTTP. Blocking HTTP calls run in
worker threads so the orchestrator's event loop stays responsive.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Protocol

import requests

from .prompting import extract_token_usage

logger = logging.getLogger(__name__)

AVAILABILITY = ("unavailable", "downloadable", "downloading", "ready")


class TierError(Exception):
    """A tier failed; the orchestrator falls through to the next one."""


class TierUnavailable(TierError):
    pass


class TierTimeout(TierError):
    pass


class InferenceSession(Protocol):
    async def infer(self, prompt: str, schema: dict[str, Any]) -> str: ...


class LocalModel(Protocol):
    name: str

    async def availability(self) -> str: ...

    async def create_session(self, params: dict[str, Any] | None = None) -> InferenceSession: ...


class RemoteClassifier(Protocol):
    endpoint: str

    async def classify_batch(self, texts: list[str]) -> dict[str, Any]: ...


class UserGesture:
    """One-shot signal that the user interacted (gates model downloads)."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def signal(self) -> None:
        self._event.set()

    @property
    def signalled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


# ----------------------------------------------------------------------
# Ollama-backed local model
# ----------------------------------------------------------------------

class OllamaSession:
    """Generation session bound to one Ollama model."""

    def __init__(self, model: "OllamaLocalModel", options: dict[str, Any] | None = None) -> None:
        self._model = model
        self.options = dict(options or {})
        self.last_usage: dict[str, int | None] | None = None

    async def infer(self, prompt: str, schema: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._generate, prompt, schema)

    def _generate(self, prompt: str, schema: dict[str, Any]) -> str:
        payload = {
            "model": self._model.name,
            "prompt": prompt,
            "stream": False,
            "format": schema,
            "options": self.options,
        }
        try:
            r = requests.post(f"{self._model.base_url}/api/generate", json=payload, timeout=self._model.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise TierError(f"Ollama generate failed: {e}") from e
        self.last_usage = extract_token_usage(data)
        return str(data.get("response", ""))


class OllamaLocalModel:
    """Local inference through an Ollama server.

    Availability: server unreachable → ``unavailable``; model not pulled →
    ``downloadable`` (``downloading`` while a pull is running); otherwise
    ``ready``. ``create_session`` pulls the model when needed. With
    ``allow_download=False`` a missing model reports ``unavailable``.
    """

    def __init__(
        self,
        name: str = "llama3.2:1b",
        *,
        base_url: str = "http://localhost:11434",
        timeout: float = 60,
        allow_download: bool = True,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.allow_download = allow_download
        self._pulling = False

    @property
    def endpoint(self) -> str:
        return f"ollama:{self.name}"

    async def availability(self) -> str:
        return await asyncio.to_thread(self._availability)

    def _availability(self) -> str:
        try:
            r = requests.get(f"{self.base_url}/api/tags", timeout=min(self.timeout, 10))
            r.raise_for_status()
            models = r.json().get("models", [])
        except (requests.RequestException, ValueError) as e:
            logger.info("Ollama not reachable at %s: %s", self.base_url, e)
            return "unavailable"
        names = {m.get("name") for m in models if isinstance(m, dict)}
        if self.name in names or f"{self.name}:latest" in names:
            return "ready"
        if not self.allow_download:
            return "unavailable"
        return "downloading" if self._pulling else "downloadable"

    async def create_session(self, params: dict[str, Any] | None = None) -> OllamaSession:
        availability = await self.availability()
        if availability == "unavailable":
            raise TierUnavailable(f"model {self.name} is not available")
        if availability != "ready":
            await asyncio.to_thread(self._pull)
        return OllamaSession(self, params)

    def _pull(self) -> None:
        logger.info("pulling model %s", self.name)
        self._pulling = True
        try:
            r = requests.post(
                f"{self.base_url}/api/pull",
                json={"model": self.name, "stream": False},
                timeout=None,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise TierUnavailable(f"model download failed: {e}") from e
        finally:
            self._pulling = False


# ----------------------------------------------------------------------
# Remote classifier
# ----------------------------------------------------------------------

class HttpRemoteClassifier:
    """Calls ``POST {endpoint}`` with ``{"sentences": [...]}``.

    Expects ``{"items": [...], "mode": ..., "error"?: ...}`` back, which is
    what the sidecar's ``/classify-batch`` returns. ``mode`` names the tier
    that answered upstream and lands in the debug record; ``error`` is only
    present when an upstream tier failed.
    """

    def __init__(self, endpoint: str, *, timeout: float = 30) -> None:
        self.endpoint = endpoint
        self.timeout = timeout

    async def classify_batch(self, texts: list[str]) -> dict[str, Any]:
        return await asyncio.to_thread(self._post, texts)

    def _post(self, texts: list[str]) -> dict[str, Any]:
        try:
            r = requests.post(self.endpoint, json={"sentences": texts}, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise TierError(f"remote classifier failed: {e}") from e
        if not isinstance(data, dict):
            raise TierError("remote classifier returned a non-object reply")
        return data
