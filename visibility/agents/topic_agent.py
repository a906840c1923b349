from __future__ import annotations

from typing import Any

from openai import AsyncOpenAI

from visibility import llm_client
from visibility.llm_client import LLMResponseError, ProviderConfig, extract_json
from visibility.models.analysis import TopicData, TopicPlan
from visibility.services.prompt_store import render_prompt


class TopicAgent:
    """Generate the topics and discovery-style search queries for an institution."""

    name = "topics"

    def __init__(
        self,
        provider: ProviderConfig | None = None,
        *,
        openai_client: AsyncOpenAI | None = None,
        topic_count: int = 11,
        prompts_per_topic: int = 10,
    ):
        self.provider = provider
        self.openai_client = openai_client
        self.topic_count = topic_count
        self.prompts_per_topic = prompts_per_topic

    @property
    def model(self) -> str:
        active = self.provider or llm_client.provider()
        return active.web_search_model(active.topic_model)

    async def generate(self, institution_name: str) -> TopicPlan:
        content = await llm_client.chat_completion(
            system=render_prompt(
                "topics.system",
                topic_count=self.topic_count,
                prompts_per_topic=self.prompts_per_topic,
            ),
            user=render_prompt("topics.user", institution_name=institution_name),
            model=self.model,
            caller=self.name,
            temperature=0.7,
            max_tokens=20000,
            openai_client=self.openai_client,
        )
        return parse_topic_plan(extract_json(content, "topics"), fallback_name=institution_name)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_topic_plan(payload: dict[str, Any], *, fallback_name: str) -> TopicPlan:
    raw_topics = payload.get("topics")
    if not isinstance(raw_topics, list):
        raise LLMResponseError("topics: missing topics array")

    topics: list[TopicData] = []
    for entry in raw_topics:
        if not isinstance(entry, dict):
            continue
        title = _optional_text(entry.get("topic"))
        prompts = entry.get("prompts")
        if not title or not isinstance(prompts, list):
            continue
        cleaned = [str(p).strip() for p in prompts if p is not None and str(p).strip()]
        if cleaned:
            topics.append(TopicData(topic=title, prompts=cleaned))

    if not topics:
        raise LLMResponseError("topics: response contained no usable topics")

    return TopicPlan(
        institution_name=_optional_text(payload.get("institution_name")) or fallback_name.strip(),
        location=_optional_text(payload.get("location")),
        institution_type=_optional_text(payload.get("institution_type")),
        topics=topics,
    )
