"""
Conversation summarization into persistent memory.

The summarizer is a dumb pipe:
transcript + existing memory -> vendor -> condensed memory text.

It does NOT:
- decide when to summarize (supervisor does)
- swallow failures (supervisor logs them and still reaches CLOSED)
- store memory (delivered to the caller's callback)
"""

from __future__ import annotations

from typing import Any, Sequence

from openai import AsyncOpenAI

from config import AppConfig
from constants import SUMMARY_MAX_WORDS
from observability.metrics import timed
from session.transcript import TranscriptItem


def build_summary_prompt(items: Sequence[TranscriptItem], memory: str | None) -> str:
    history = "\n".join(f"{item.role}: {item.text}" for item in items)
    return (
        "Analyze the following conversation between an AI and a User.\n"
        "Extract and summarize key facts about the user, their preferences, "
        "their name if mentioned, and anything they asked to be remembered.\n"
        f"Keep the summary concise (max {SUMMARY_MAX_WORDS} words). "
        "This will be used as a persistent memory for the AI.\n\n"
        f"Current Memory: {memory or 'None'}\n\n"
        f"New Conversation:\n{history}\n\n"
        "Provide the updated, cumulative summary of user preferences and facts. "
        "Output ONLY the summary."
    )


class Summarizer:
    """
    OpenAI-compatible chat completion summarizer.

    One instance may serve many sequential calls.
    """

    def __init__(
        self,
        *,
        client: Any,
        model: str,
        session_id: str | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._session_id = session_id

    async def summarize(
        self,
        items: Sequence[TranscriptItem],
        memory: str | None = None,
    ) -> str:
        """
        Return the updated memory text.

        An empty completion keeps the existing memory.
        """
        prompt = build_summary_prompt(items, memory)
        with timed(
            "summarization_latency",
            session_id=self._session_id,
            details={"model": self._model, "items": len(items)},
        ):
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
            )

        text = ""
        choices = getattr(response, "choices", None) or []
        if choices:
            text = (choices[0].message.content or "").strip()
        return text or memory or ""


def build_summary_client(config: AppConfig) -> AsyncOpenAI | None:
    """Build the summarization client, or None when no key is configured."""
    if not config.summary_api_key:
        return None
    if config.summary_base_url:
        return AsyncOpenAI(
            api_key=config.summary_api_key,
            base_url=config.summary_base_url,
        )
    return AsyncOpenAI(api_key=config.summary_api_key)


def build_summarizer(config: AppConfig) -> Summarizer | None:
    client = build_summary_client(config)
    if client is None:
        return None
    return Summarizer(client=client, model=config.summary_model)
