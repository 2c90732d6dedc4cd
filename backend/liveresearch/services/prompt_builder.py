from __future__ import annotations

import json
from typing import Iterable, List

from liveresearch.schemas.research import ChatTurn, PageExtraction, SearchResult

PAGE_EXTRACTION_SCHEMA = """{
  "potentialSourcesOfInformation": string[],
  "potentialBarrierDescriptions": string[],
  "summary": string,
  "howThisIsRelevant": string,
  "relevanceScore": number
}"""

SUMMARY_SYSTEM_PROMPT = (
    "Please analyse those sources step by step and provide a summary of the most "
    "relevant information. Provide links to the original webpages, if they are relevant, "
    "in markdown format as citations. Based on the research information available, "
    "provide as many relevant links as possible to support your analysis and claims."
)

FOLLOWUP_SYSTEM_PROMPT = (
    "You are a policy research assistant. Continue the conversation using the research "
    "already gathered earlier in this chat. Cite sources with markdown links right after "
    "the claims they support, keep the answer structured with clear headings, and state "
    "plainly when the available research does not cover a question."
)


class PromptBuilder:
    """Compose the message lists sent to the LLM at each pipeline stage."""

    def __init__(self, max_history: int = 0, max_page_chars: int = 12000) -> None:
        self._max_history = max_history
        self._max_page_chars = max(500, max_page_chars)

    def query_generation(self, question: str, count: int) -> List[dict]:
        """Ask for ``count`` web search queries as a JSON array of strings."""

        return [
            {
                "role": "system",
                "content": (
                    "You generate web search queries for a research question. "
                    f"Return exactly {count} diverse, specific queries as a JSON array "
                    "of strings and nothing else."
                ),
            },
            {"role": "user", "content": f"Research question: {question}"},
        ]

    def pairwise_comparison(self, kind: str, first: str, second: str, context: str) -> List[dict]:
        """Ask which of two items is more relevant; the answer is a single word."""

        return [
            {
                "role": "system",
                "content": (
                    f"You compare two {kind} for a research question. "
                    "Answer with exactly one word: First, Second or Neither."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Research question: {context}\n\n"
                    f"First {kind[:-1]}:\n{first}\n\n"
                    f"Second {kind[:-1]}:\n{second}\n\n"
                    "Which one is more relevant and important for the research question?"
                ),
            },
        ]

    def page_extraction(self, question: str, url: str, page_text: str) -> List[dict]:
        """Ask for a structured extraction of one web page."""

        return [
            {
                "role": "system",
                "content": (
                    "Act as a policy research assistant. From the page, identify laws, "
                    "barriers and investment opportunities relevant to the research question. "
                    "Return only JSON matching this schema:\n"
                    f"{PAGE_EXTRACTION_SCHEMA}"
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Research question: {question}\n"
                    f"Page URL: {url}\n\n"
                    f"Page text:\n{page_text[: self._max_page_chars]}"
                ),
            },
        ]

    def summary(self, question: str, research: Iterable[PageExtraction]) -> List[dict]:
        """Embed every extraction and the question into the synthesis prompt."""

        results = [item.to_wire() for item in research]
        user_prompt = (
            f"Research Question: {question}\n\n"
            "Results from the web research:\n"
            f"{json.dumps(results, ensure_ascii=False, indent=2)}"
        )
        return [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ]

    def followup(self, history: Iterable[ChatTurn]) -> List[dict]:
        """Prefix the full conversation with the follow-up system prompt."""

        messages: List[dict] = [{"role": "system", "content": FOLLOWUP_SYSTEM_PROMPT}]
        turns = list(history)
        if self._max_history:
            turns = turns[-self._max_history :]
        for turn in turns:
            messages.append({"role": turn.sender, "content": turn.text})
        return messages


def render_item(item: object) -> str:
    """Render a rankable item for a comparison prompt."""

    if isinstance(item, SearchResult):
        return f"{item.title}\n{item.description}\n{item.url}"
    return str(item)
