from __future__ import annotations

from typing import Any

from openai import AsyncOpenAI

from visibility import llm_client
from visibility.llm_client import ProviderConfig, extract_json
from visibility.models.analysis import AnswerPayload
from visibility.services.prompt_store import render_prompt


class AnswerAgent:
    """Fetch a web-grounded answer for one search query and extract the brands it names."""

    name = "answer"

    def __init__(
        self,
        provider: ProviderConfig | None = None,
        *,
        openai_client: AsyncOpenAI | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ):
        self.provider = provider
        self.openai_client = openai_client
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def model(self) -> str:
        active = self.provider or llm_client.provider()
        return active.web_search_model(active.answer_model)

    @staticmethod
    def build_user_prompt(
        query_text: str,
        *,
        focus_brand: str = "",
        include_institution_mention: bool = False,
        location: str | None = None,
    ) -> str:
        query = query_text.strip()
        if location and location.strip():
            query += render_prompt("answer.location_suffix", location=location.strip())
        if include_institution_mention and focus_brand.strip():
            return render_prompt("answer.user_with_mention", query=query, focus_brand=focus_brand.strip())
        return render_prompt("answer.user", query=query)

    async def fetch_answer(
        self,
        query_text: str,
        *,
        focus_brand: str = "",
        include_institution_mention: bool = False,
        location: str | None = None,
    ) -> AnswerPayload:
        content = await llm_client.chat_completion(
            system=render_prompt("answer.system"),
            user=self.build_user_prompt(
                query_text,
                focus_brand=focus_brand,
                include_institution_mention=include_institution_mention,
                location=location,
            ),
            model=self.model,
            caller=self.name,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            openai_client=self.openai_client,
        )
        return parse_answer(content)


def _clean_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    cleaned: list[str] = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            cleaned.append(text)
    return cleaned


def parse_answer(content: str | None) -> AnswerPayload:
    parsed = extract_json(content, "answer")
    answer = parsed.get("Answer")
    if answer is None:
        answer = parsed.get("answer")
    if isinstance(answer, list):
        answer = "\n".join(_clean_list(answer))
    return AnswerPayload(
        answer=str(answer).strip() if answer is not None else "",
        brands_mentioned=_clean_list(parsed.get("brands_mentioned")),
        websites_cited=_clean_list(parsed.get("websites_cited")),
    )
