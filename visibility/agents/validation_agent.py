from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Sequence

from loguru import logger
from openai import AsyncOpenAI

from visibility import llm_client
from visibility.llm_client import LLMError, LLMResponseError, ProviderConfig, extract_json
from visibility.models.analysis import Confidence, MatchResult, RankResult, ValidationVerdict
from visibility.services.name_matcher import match_brand
from visibility.services.prompt_store import render_prompt


class VisibilityPolicy(StrEnum):
    FLAT = "flat"
    BANDED = "banded"


class ValidationMode(StrEnum):
    LLM = "llm"
    LOCAL = "local"


def visibility_weight(rank: int, policy: VisibilityPolicy | str = VisibilityPolicy.BANDED) -> int:
    """Visibility weight in percent for a 1-based rank (0 means not mentioned)."""
    if rank <= 0:
        return 0
    if rank == 1:
        return 100
    if VisibilityPolicy(policy) == VisibilityPolicy.FLAT:
        return 50
    if rank <= 3:
        return 50
    if rank <= 5:
        return 25
    return 10


def _coerce_found(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise LLMResponseError(f"validation: 'found' must be a boolean, got {value!r}")


def _coerce_position(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_verdict(payload: dict[str, Any]) -> ValidationVerdict:
    matched = payload.get("matched_name")
    confidence_raw = str(payload.get("confidence") or "").strip().lower()
    try:
        confidence = Confidence(confidence_raw)
    except ValueError:
        confidence = Confidence.LOW
    return ValidationVerdict(
        found=_coerce_found(payload.get("found")),
        matched_name=str(matched).strip() if matched else None,
        position=_coerce_position(payload.get("position")),
        confidence=confidence,
        reasoning=str(payload.get("reasoning") or ""),
    )


def _index_of(name: str | None, brands: Sequence[str]) -> int | None:
    if not name:
        return None
    for index, brand in enumerate(brands):
        if brand == name:
            return index
    lowered = name.strip().lower()
    for index, brand in enumerate(brands):
        if brand.strip().lower() == lowered:
            return index
    return None


def rank_from_verdict(verdict: ValidationVerdict, brands: Sequence[str]) -> int:
    """Reconcile the verdict with the list so a positive rank always points at the matched entry."""
    if not verdict.found:
        return 0
    name_index = _index_of(verdict.matched_name, brands)
    position = verdict.position
    if position is not None and 1 <= position <= len(brands):
        if name_index is not None and name_index != position - 1:
            if brands[position - 1].strip().lower() != (verdict.matched_name or "").strip().lower():
                return name_index + 1
        return position
    if name_index is not None:
        return name_index + 1
    return 0


class ValidationAgent:
    """Resolve the authoritative rank of the focus institution in an answer's brand list.

    The local name matcher always runs first and is logged for comparison. In
    ``llm`` mode the semantic validator decides; any validator failure counts
    as not found. In ``local`` mode the matcher decides and no call is made.
    """

    name = "validation"

    def __init__(
        self,
        provider: ProviderConfig | None = None,
        *,
        policy: VisibilityPolicy | str = VisibilityPolicy.BANDED,
        mode: ValidationMode | str = ValidationMode.LLM,
        openai_client: AsyncOpenAI | None = None,
    ):
        self.provider = provider
        self.policy = VisibilityPolicy(policy)
        self.mode = ValidationMode(mode)
        self.openai_client = openai_client

    @property
    def model(self) -> str:
        active = self.provider or llm_client.provider()
        return active.validation_model

    async def validate(self, brands_mentioned: Sequence[str], focus_name: str) -> ValidationVerdict:
        content = await llm_client.chat_completion(
            system=render_prompt("validation.system"),
            user=render_prompt(
                "validation.user",
                focus_name=focus_name,
                brands_json=json.dumps(list(brands_mentioned), indent=2, ensure_ascii=False),
            ),
            model=self.model,
            caller=self.name,
            temperature=0.1,
            max_tokens=500,
            json_mode=True,
            openai_client=self.openai_client,
        )
        return parse_verdict(extract_json(content, "validation"))

    async def resolve_rank(self, brands_mentioned: Sequence[str], focus_name: str) -> RankResult:
        brands = list(brands_mentioned or [])
        if not brands:
            return RankResult(
                rank=0,
                weight=0,
                confidence=Confidence.HIGH,
                reasoning="No brands mentioned in the answer",
            )

        local = match_brand(brands, focus_name)

        if self.mode == ValidationMode.LOCAL:
            return self._result(
                local.rank,
                brands,
                confidence=Confidence.MEDIUM,
                reasoning=f"local match via {local.strategy.value}",
            )

        try:
            verdict = await self.validate(brands, focus_name)
        except LLMError as exc:
            logger.warning(f"Validation failed for '{focus_name}', treating as not mentioned: {exc}")
            return RankResult(
                rank=0,
                weight=0,
                confidence=Confidence.LOW,
                reasoning=f"Validation error: {exc}",
            )

        rank = rank_from_verdict(verdict, brands)
        self._log_comparison(focus_name, local, rank)
        return self._result(rank, brands, confidence=verdict.confidence, reasoning=verdict.reasoning)

    def _result(
        self,
        rank: int,
        brands: list[str],
        *,
        confidence: Confidence,
        reasoning: str,
    ) -> RankResult:
        return RankResult(
            rank=rank,
            weight=visibility_weight(rank, self.policy),
            matched_name=brands[rank - 1] if rank > 0 else None,
            confidence=confidence,
            reasoning=reasoning,
        )

    @staticmethod
    def _log_comparison(focus_name: str, local: MatchResult, rank: int) -> None:
        if local.rank == rank:
            logger.debug(f"Rank for '{focus_name}': {rank} (local {local.strategy.value} agrees)")
        else:
            logger.info(
                f"Rank for '{focus_name}': validator={rank}, local={local.rank} ({local.strategy.value})"
            )
