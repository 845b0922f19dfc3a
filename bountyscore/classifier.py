"""Classification oracle: prompt in, structured verdict out.

The pipeline only depends on the ``Classifier`` protocol. ``LLMClassifier``
is the production implementation; tests substitute canned responses.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, StrictBool, ValidationError

from bountyscore.config import Settings, get_settings
from bountyscore.scoring import ComponentSpec, SeveritySpec

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned unusable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ClassificationUnparseableError(LLMCallError):
    """Oracle output was not valid JSON or did not match the verdict shape."""
    def __init__(self, message: str, raw_text: str):
        super().__init__(message, retryable=False)
        self.raw_text = raw_text


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = "You are scoring GitHub pull requests for a bug bounty. Respond with JSON only."

ELIGIBILITY_CRITERIA = [
    "GitHub issue exists with reproducible steps.",
    "PR contains a working fix.",
    "PR description links to the issue (Fixes #123 or similar).",
    "Tests are included or updated.",
]

DEFAULT_PROMPT_TEMPLATE = """\
Classify the merged pull request below.

Pick the ONE product component the change primarily affects:
{{components_table}}

Pick the severity of the problem the change fixes:
{{severity_table}}

Check each eligibility criterion independently (true/false):
{{eligibility_criteria}}

Pull request:
{{pr_context}}

Respond with ONLY valid JSON:
{
  "primary_component_key": "<component key>",
  "severity_key": "<severity key>",
  "eligibility": {
    "issue": <true|false>,
    "fix_implementation": <true|false>,
    "pr_linked": <true|false>,
    "tests": <true|false>
  },
  "justification_component": "<1-2 sentences>",
  "justification_severity": "<1-2 sentences>",
  "impact_summary": "<1-2 sentences>",
  "eligibility_notes": "<optional>",
  "review_notes": "<optional>"
}
"""


def render_prompt(
    template: str,
    components: list[ComponentSpec],
    severities: list[SeveritySpec],
    pr_context: str,
) -> str:
    components_table = "\n".join(
        f"{c.key} ({c.name or c.key}) - multiplier {c.multiplier} - {c.description}".rstrip(" -")
        for c in components
    )
    severity_table = "\n".join(
        f"{s.key} ({s.name or s.key}) - base points {s.base_points} - {s.description}".rstrip(" -")
        for s in sorted(severities, key=lambda s: s.sort_order)
    )
    criteria = "\n".join(f"- {c}" for c in ELIGIBILITY_CRITERIA)
    return (
        (template or DEFAULT_PROMPT_TEMPLATE)
        .replace("{{components_table}}", components_table)
        .replace("{{severity_table}}", severity_table)
        .replace("{{eligibility_criteria}}", criteria)
        .replace("{{pr_context}}", pr_context)
    )


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class EligibilityVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")

    issue: StrictBool
    fix_implementation: StrictBool
    pr_linked: StrictBool
    tests: StrictBool


class ClassifierVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")

    primary_component_key: str
    severity_key: str
    eligibility: EligibilityVerdict
    justification_component: str
    justification_severity: str
    impact_summary: str
    eligibility_notes: str | None = None
    review_notes: str | None = None


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*)\s*```$", re.DOTALL)


def parse_verdict(text: str) -> ClassifierVerdict:
    """Parse oracle output, stripping a markdown code fence around the whole body."""
    body = (text or "").strip()
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        m = _FENCE_RE.match(body)
        if not m:
            raise ClassificationUnparseableError(f"Classifier returned invalid JSON: {body[:200]!r}", text) from exc
        try:
            data = json.loads(m.group(1))
        except json.JSONDecodeError as inner:
            raise ClassificationUnparseableError(
                f"Classifier returned invalid JSON: {body[:200]!r}", text,
            ) from inner
    try:
        return ClassifierVerdict.model_validate(data)
    except ValidationError as exc:
        raise ClassificationUnparseableError(
            f"Classifier JSON failed validation: {exc.error_count()} errors", text,
        ) from exc


@dataclass
class ClassificationRequest:
    components: list[ComponentSpec]
    severities: list[SeveritySpec]
    pr_context: str
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    model: str = ""


@dataclass
class ClassificationResult:
    verdict: ClassifierVerdict
    raw_text: str
    model_name: str


class Classifier(Protocol):
    async def classify(self, request: ClassificationRequest) -> ClassificationResult: ...


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str, model: str | None = None) -> str:
        """Send system+user message to the LLM, return the raw response text."""
        model = model or self.model
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=2048,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=2048,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc


class LLMClassifier:
    """Classifier backed by an LLM with a hard per-call timeout."""

    def __init__(self, client: LLMClient | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._client = client
        self.timeout = self.settings.llm_timeout_seconds

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient(self.settings.llm_provider, self.settings.llm_model)
        return self._client

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        prompt = render_prompt(request.prompt_template, request.components, request.severities, request.pr_context)
        model = request.model or self.client.model
        try:
            text = await asyncio.wait_for(self.client.complete(SYSTEM_PROMPT, prompt, model=model), self.timeout)
        except asyncio.TimeoutError as exc:
            raise LLMCallError(f"Classifier timed out after {self.timeout:.0f}s", retryable=True) from exc
        verdict = parse_verdict(text)
        log.debug("Classified as %s/%s", verdict.primary_component_key, verdict.severity_key)
        return ClassificationResult(verdict=verdict, raw_text=text, model_name=model)
