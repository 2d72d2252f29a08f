"""採点（Grader）プロバイダ。

提出テキストを原文・文体メトリクスと比較し、accuracy / sub_scores / feedback を返す。
- OpenAIGrader: openai.AsyncOpenAI を JSON モードで呼び出す本番用実装
- LocalGrader: 外部依存なしの決定的な採点（開発用）
上流エラーは GraderUnavailable（5xx/タイムアウト/接続失敗、再試行対象）と
GraderRejected（4xx、再試行しない）に分類する。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Mapping, Protocol

import openai
from pydantic import ValidationError as PydanticValidationError

from ..config import settings
from ..errors import GraderFormatError, GraderRejected, GraderUnavailable
from ..logging import logger
from ..models.training import GraderOutput
from . import _get_grader_instance, _set_grader_instance


@dataclass(frozen=True)
class GradingRequest:
    original_text: str
    candidate_text: str
    reference_style_metrics: Mapping[str, Any] = field(default_factory=dict)


class Grader(Protocol):
    """Grading capability consumed by the submission pipeline."""

    async def grade(self, request: GradingRequest) -> GraderOutput: ...


_METRIC_LABELS = (
    ("sentence_length_avg", "Avg Sentence Length"),
    ("dependency_distance", "Dependency Distance"),
    ("adj_verb_ratio", "Adj/Verb Ratio"),
    ("sentence_length_variance", "Sentence Variance"),
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def build_grading_prompt(request: GradingRequest) -> str:
    """Compose the literary-critic prompt for one imitation attempt."""

    metrics = request.reference_style_metrics or {}
    if metrics:
        metric_lines = "\n".join(
            f"- {label}: {metrics.get(key) if metrics.get(key) is not None else 'N/A'}"
            for key, label in _METRIC_LABELS
        )
    else:
        metric_lines = "No metrics available"
    return (
        "You are a literary critic evaluating a stylistic imitation exercise.\n\n"
        f"ORIGINAL TEXT:\n{request.original_text}\n\n"
        f"USER ATTEMPT:\n{request.candidate_text}\n\n"
        f"TARGET STYLE METRICS:\n{metric_lines}\n\n"
        "Evaluate the user's attempt on these criteria (score each 0-100):\n"
        "1. Structure: Does the sentence rhythm and complexity match the original "
        "(parataxis vs. hypotaxis)?\n"
        "2. Vocabulary: Is the word choice appropriate (register, formality, time period)?\n"
        "3. Rhythm: Does the cadence and flow match the original's pace?\n"
        "4. Tone: Is the emotional atmosphere and voice preserved?\n\n"
        "Provide constructive, specific feedback explaining what works and what doesn't.\n\n"
        "Output ONLY a JSON object in this exact format:\n"
        '{"feedback": "...", "scores": {"structure": 0-100, "vocabulary": 0-100, '
        '"rhythm": 0-100, "tone": 0-100}, "overall_accuracy": 0-100}'
    )


def parse_grader_output(raw: str | Mapping[str, Any] | None) -> GraderOutput:
    """Validate a raw grader payload, raising GraderFormatError on any mismatch.

    文字列の場合はコードフェンスや前後の説明文を取り除き、最初の `{` から
    最後の `}` までを JSON として解釈する。
    """

    if raw is None:
        raise GraderFormatError()
    data: Any = raw
    if isinstance(raw, str):
        text = _FENCE_RE.sub("", raw.strip())
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            logger.warning("grader_output_not_json", content_chars=len(raw))
            raise GraderFormatError()
        try:
            data = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            logger.warning("grader_output_not_json", content_chars=len(raw))
            raise GraderFormatError() from exc
    if not isinstance(data, Mapping):
        raise GraderFormatError()
    try:
        return GraderOutput.model_validate(dict(data))
    except PydanticValidationError as exc:
        logger.warning(
            "grader_output_invalid",
            errors=[".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()],
        )
        raise GraderFormatError() from exc


class OpenAIGrader:
    """OpenAI Chat Completions (JSON mode) を利用する採点実装。"""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._temperature = float(max(0.0, min(1.0, temperature)))
        self._max_tokens = int(max_tokens)
        # retries are owned by the submission pipeline
        self._client = client or openai.AsyncOpenAI(
            api_key=api_key, timeout=timeout_seconds, max_retries=0
        )

    async def grade(self, request: GradingRequest) -> GraderOutput:
        prompt = build_grading_prompt(request)
        logger.info(
            "grader_call",
            provider="openai",
            model=self._model,
            prompt_chars=len(prompt),
        )
        try:
            resp = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass
            logger.warning(
                "grader_upstream_failed",
                provider="openai",
                error_type=exc.__class__.__name__,
            )
            raise GraderUnavailable() from exc
        except openai.APIStatusError as exc:
            status = int(getattr(exc, "status_code", 0) or 0)
            logger.warning(
                "grader_upstream_failed",
                provider="openai",
                status_code=status,
                error_type=exc.__class__.__name__,
            )
            if 400 <= status < 500:
                raise GraderRejected() from exc
            raise GraderUnavailable() from exc

        content = self._extract_text(resp)
        logger.info(
            "grader_result",
            provider="openai",
            model=self._model,
            content_chars=len(content or ""),
        )
        return parse_grader_output(content)

    @staticmethod
    def _extract_text(resp: Any) -> str | None:
        choices = getattr(resp, "choices", None) or []
        if not choices:
            return None
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else None

    async def aclose(self) -> None:
        await self._client.close()


_WORD_RE = re.compile(r"\w+", re.UNICODE)
_SENTENCE_RE = re.compile(r"[.!?…]+")


def _sentences(text: str) -> list[str]:
    return [s for s in (part.strip() for part in _SENTENCE_RE.split(text)) if s]


def _ratio(a: float, b: float) -> float:
    if a <= 0 and b <= 0:
        return 1.0
    return min(a, b) / max(a, b)


class LocalGrader:
    """外部サービスを使わない決定的な採点（開発・デモ用）。

    原文との語彙重なり・文長・文数の近さから各スコアを算出する。
    同じ入力には常に同じ結果を返す。
    """

    async def grade(self, request: GradingRequest) -> GraderOutput:
        original = request.original_text
        candidate = request.candidate_text
        orig_words = [w.lower() for w in _WORD_RE.findall(original)]
        cand_words = [w.lower() for w in _WORD_RE.findall(candidate)]
        orig_sents = _sentences(original) or [original]
        cand_sents = _sentences(candidate) or [candidate]

        union = set(orig_words) | set(cand_words)
        vocabulary = len(set(orig_words) & set(cand_words)) / len(union) if union else 0.0
        avg_orig = len(orig_words) / len(orig_sents)
        avg_cand = len(cand_words) / len(cand_sents)
        rhythm = _ratio(avg_orig, avg_cand)
        structure = _ratio(len(orig_sents), len(cand_sents))
        tone = SequenceMatcher(None, orig_words, cand_words).ratio()

        scores = {
            "structure": round(structure * 100, 1),
            "vocabulary": round(vocabulary * 100, 1),
            "rhythm": round(rhythm * 100, 1),
            "tone": round(tone * 100, 1),
        }
        accuracy = round(sum(scores.values()) / len(scores), 1)
        weakest = min(scores, key=scores.get)  # type: ignore[arg-type]
        feedback = (
            f"Overall similarity {accuracy:.0f}/100. "
            f"Weakest dimension: {weakest} ({scores[weakest]:.0f}/100)."
        )
        logger.info("grader_call", provider="local", accuracy=accuracy)
        return GraderOutput.model_validate(
            {"accuracy": accuracy, "sub_scores": scores, "feedback": feedback}
        )


def get_grader() -> Grader:
    """設定値に応じた採点クライアントを返す（シングルトン）。"""

    instance = _get_grader_instance()
    if instance is not None:
        return instance

    provider = (settings.grader_provider or "").lower()
    if provider == "openai":
        api_key = settings.openai_api_key
        if not api_key:
            if settings.strict_mode:
                raise RuntimeError(
                    "OPENAI_API_KEY is required for GRADER_PROVIDER=openai (strict mode)"
                )
            logger.info("grader_provider_select", provider="local", reason="missing_api_key")
            grader: Grader = LocalGrader()
        else:
            logger.info("grader_provider_select", provider="openai", model=settings.llm_model)
            grader = OpenAIGrader(
                api_key=api_key,
                model=settings.llm_model,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
                timeout_seconds=settings.grader_timeout_ms / 1000.0,
            )
    else:
        logger.info("grader_provider_select", provider="local")
        grader = LocalGrader()
    _set_grader_instance(grader)
    return grader


def set_grader(grader: Grader | None) -> None:
    """採点クライアントを差し替える。None で次回 get_grader 時に再構築。"""

    _set_grader_instance(grader)


async def shutdown_providers() -> None:
    """採点クライアントを解放する。"""

    instance = _get_grader_instance()
    close = getattr(instance, "aclose", None)
    if close is not None:
        await close()
    _set_grader_instance(None)
