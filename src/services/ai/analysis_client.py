"""
AI analysis backend.

Talks to an OpenAI-compatible chat-completions endpoint (Azure OpenAI or any
gateway exposing ``/chat/completions``). When no endpoint is configured the
client answers offline with heuristics so the pipeline still completes
locally.
"""

import json
from collections import Counter, defaultdict
from decimal import Decimal
from typing import Optional
import httpx
from loguru import logger
from pydantic import BaseModel, Field

from ...core.errors import AIServiceError
from ...models.batch import Document
from ...models.invoice import Invoice, InvoiceStatus
from .classification import classify_document_type

ANALYSIS_SYSTEM_PROMPT = (
    "You review batches of scanned business documents for an accounts payable team. "
    "Reply with a JSON object with two keys: \"summary\" (a short paragraph) and "
    "\"recommendations\" (a list of short action items)."
)

CHAT_SYSTEM_PROMPT = (
    "You answer questions about a batch of scanned documents. "
    "Use only the context provided; say so when the answer is not in it."
)


class AnalysisResult(BaseModel):
    summary: str
    recommendations: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class AIAnalysisClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        deployment: str | None = None,
        timeout: float = 60.0,
        max_content_chars: int = 4000,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.deployment = deployment
        self.timeout = timeout
        self.max_content_chars = max_content_chars

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def analyze_batch(
        self,
        documents: list[Document],
        invoices: Optional[list[Invoice]] = None,
    ) -> AnalysisResult:
        """
        Summarize a batch and suggest follow-up actions.

        Raises:
            AIServiceError: no document has extracted text, or the backend failed
        """
        invoices = invoices or []
        readable = [d for d in documents if d.extracted_text]
        if not readable:
            raise AIServiceError("No extracted text available for analysis")

        if not self.configured:
            logger.warning("LLM not configured - using offline batch analysis")
            return self._offline_analysis(documents, invoices)

        content = await self._complete(ANALYSIS_SYSTEM_PROMPT, self._batch_prompt(readable, invoices))
        summary, recommendations = self._parse_analysis(content)
        return AnalysisResult(
            summary=summary,
            recommendations=recommendations,
            metadata={
                "mode": "llm",
                "model": self.deployment or "",
                "document_count": str(len(documents)),
                "invoice_count": str(len(invoices)),
            },
        )

    async def chat(self, message: str, context: str) -> str:
        if not message or not message.strip():
            raise AIServiceError("Chat message is empty")

        if not self.configured:
            logger.warning("LLM not configured - using offline chat answer")
            return self._offline_chat(message, context)

        user = f"Context:\n{self._truncate(context)}\n\nQuestion: {message.strip()}"
        return await self._complete(CHAT_SYSTEM_PROMPT, user)

    async def _complete(self, system: str, user: str) -> str:
        url = f"{self.base_url}/chat/completions"
        body = {
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.2,
        }
        if self.deployment:
            body["model"] = self.deployment
        headers = {"Authorization": f"Bearer {self.api_key}", "api-key": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"LLM request failed: {e}")
            raise AIServiceError(f"LLM request failed: {e}") from e

        if r.status_code >= 400:
            logger.error("LLM returned an error", http_status=r.status_code)
            raise AIServiceError(f"LLM returned HTTP {r.status_code}")

        try:
            return r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIServiceError(f"Unexpected LLM response: {e}") from e

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_content_chars:
            return text
        return text[: self.max_content_chars] + "\n[truncated]"

    def _batch_prompt(self, documents: list[Document], invoices: list[Invoice]) -> str:
        parts = []
        for d in documents:
            parts.append(f"--- {d.file_name} ---\n{d.extracted_text}")
        for inv in invoices:
            parts.append(
                f"Invoice {inv.invoice_number or '?'} from {inv.vendor_name or 'unknown vendor'}: "
                f"{inv.amount if inv.amount is not None else '?'} {inv.currency or ''} "
                f"due {inv.due_date or '?'} ({inv.status.value})"
            )
        return self._truncate("\n\n".join(parts))

    @staticmethod
    def _parse_analysis(content: str) -> tuple[str, list[str]]:
        text = content.strip()
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            data = json.loads(text)
        except ValueError:
            return content.strip(), []
        if not isinstance(data, dict) or "summary" not in data:
            return content.strip(), []
        recommendations = data.get("recommendations") or []
        if isinstance(recommendations, str):
            recommendations = [recommendations]
        return str(data["summary"]), [str(r) for r in recommendations]

    def _offline_analysis(self, documents: list[Document], invoices: list[Invoice]) -> AnalysisResult:
        types = Counter(classify_document_type(d.extracted_text) for d in documents)
        totals: dict[str, Decimal] = defaultdict(Decimal)
        for inv in invoices:
            if inv.amount is not None:
                totals[inv.vendor_name or "Unknown vendor"] += inv.amount
        incomplete = sum(1 for inv in invoices if inv.status == InvoiceStatus.EXTRACTION_FAILED)

        summary = (
            f"This batch of {len(documents)} documents contains {types['invoice']} invoice(s), "
            f"{types['receipt']} receipt(s) and {types['unknown']} unclassified document(s)."
        )
        if totals:
            grand_total = sum(totals.values(), Decimal("0"))
            summary += f" Extracted invoice total: {grand_total:.2f} across {len(totals)} vendor(s)."

        recommendations = []
        if incomplete:
            recommendations.append(f"Review {incomplete} invoice(s) with missing required fields")
        if types["receipt"]:
            recommendations.append(f"Confirm {types['receipt']} receipt(s) are already paid before filing")
        if types["unknown"]:
            recommendations.append(f"Classify {types['unknown']} document(s) manually")
        if not recommendations:
            recommendations.append("No issues detected; invoices are ready for approval")

        return AnalysisResult(
            summary=summary,
            recommendations=recommendations,
            metadata={
                "mode": "offline",
                "document_count": str(len(documents)),
                "invoice_count": str(len(invoices)),
                "incomplete_invoices": str(incomplete),
                **{f"total:{vendor}": f"{amount:.2f}" for vendor, amount in totals.items()},
            },
        )

    @staticmethod
    def _offline_chat(message: str, context: str) -> str:
        words = {w.strip("?.,!").lower() for w in message.split() if len(w) > 3}
        lines = [line for line in context.splitlines() if any(w in line.lower() for w in words)]
        if not lines:
            return "No AI backend is configured and nothing in this batch matches the question."
        return "Relevant batch content:\n" + "\n".join(lines[:5])
