"""Answer generation using OpenAI chat completions.

Provides:
- build_context: Numbered JSON rendering of every retrieved record
- build_system_prompt: The fixed product-advisor instruction with the context appended
- AnswerGenerator.generate: Short, low-temperature answer that never names the product
  code and always closes with the follow-up suffix
"""
import json
import logging
import re
from typing import Dict, List, Optional

from openai import OpenAI, OpenAIError

from askgate.errors import UpstreamError

logger = logging.getLogger(__name__)

NO_PRODUCT_INFO = "No product information found."


def build_context(records: List[Dict]) -> str:
    """Create an enumerated context block from retrieved records.

    Args:
        records: Retrieved rows; every field is dumped as-is.

    Returns:
        str: "1. {json}" blocks, or the no-information marker for an empty list.
    """
    if not records:
        return NO_PRODUCT_INFO
    lines: List[str] = []
    for i, rec in enumerate(records, start=1):
        lines.append(f"{i}. {json.dumps(rec, indent=2, ensure_ascii=False, default=str)}")
    return "\n\n".join(lines)


def build_system_prompt(records: List[Dict], suffix: str) -> str:
    return (
        "You are a product advisor. Answer customer questions using the product information below. "
        "Keep responses concise, clear, and direct. Focus only on the specific question asked. "
        "Do not say the product code or any internal identifier in the response. "
        f'Add "{suffix}" at the end.\n\n'
        f"Product Information:\n{build_context(records)}"
    )


def scrub_identifier(answer: str, identifier: str) -> str:
    """Remove literal occurrences of an identifier from model output."""
    if not identifier:
        return answer
    pattern = re.compile(rf"(?<!\w){re.escape(identifier)}(?!\w)", re.IGNORECASE)
    cleaned = pattern.sub("", answer)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    return re.sub(r"\s+([.,!?;:])", r"\1", cleaned).strip()


class AnswerGenerator:
    """Grounded answer generation for one product question.

    Args:
        api_key: OpenAI key for chat completions.
        model: Chat model name.
        max_tokens: Output cap (150 keeps spoken answers short).
        temperature: Sampling temperature.
        suffix: Closing sentence inviting follow-up questions.
        client: Pre-built client (tests inject stand-ins here).
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 150,
        temperature: float = 0.3,
        suffix: str = "Do you have any other questions?",
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.suffix = suffix
        self._client = client or OpenAI(api_key=api_key)

    def generate(self, question: str, records: List[Dict], product_code: str) -> str:
        """Generate the answer text for a question about one product.

        Args:
            question: The customer's question, sent verbatim as the user turn.
            records: Retrieved context records (may be empty).
            product_code: Used only to keep the code out of the answer.

        Returns:
            str: The answer, ending with the configured suffix.
        """
        logger.info("AI request: product_code=%s question=%.50s records=%d", product_code, question, len(records))
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(records, self.suffix)},
                    {"role": "user", "content": question},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            raise UpstreamError(f"Completion request failed: {exc}", product_code=product_code) from exc

        if not resp.choices:
            raise UpstreamError("Completion provider returned no choices", product_code=product_code)
        content = (resp.choices[0].message.content or "").strip()
        answer = scrub_identifier(content, product_code)
        if self.suffix and not answer.endswith(self.suffix):
            answer = f"{answer} {self.suffix}".strip()
        logger.info("AI response generated: length=%d", len(answer))
        return answer
