"""Answer synthesis over retrieval results (RAG).

Packs node summaries and snippets into a character-bounded context, asks the
chat model for an answer citing node ids in square brackets, and keeps only
citations that refer to nodes actually present in the context.
"""

import re
from typing import TextIO

from taskwing.cancellation import CancellationToken
from taskwing.log_config import get_logger, log_timing
from taskwing.models import Answer, SearchResult
from taskwing.protocols import ChatClient

log = get_logger("knowledge.answer")

NO_CONTEXT_ANSWER = "I found no relevant information in project memory to answer this question."

SYSTEM_PROMPT = """You are an expert on this codebase, answering from its project memory.
Answer the question using ONLY the context entries provided.
Each entry starts with its id in square brackets. Cite every entry you rely on by
writing its id in square brackets, for example [3f2a9c1e-...].
If the context does not contain enough information, say so plainly.
Be concise and direct."""

_CITATION_RE = re.compile(r"\[([A-Za-z0-9][A-Za-z0-9_\-]{7,})\]")


def build_context(results: list[SearchResult], char_budget: int) -> tuple[str, list[str]]:
    """Render results into a context block no longer than ``char_budget``.

    Returns:
        (context text, ids of the entries that made it in)
    """
    parts: list[str] = []
    ids: list[str] = []
    used = 0
    for result in results:
        lines = [f"[{result.node_id}] ({result.type.value}) {result.title}"]
        if result.summary:
            lines.append(result.summary)
        if result.snippet and result.snippet not in result.summary:
            lines.append(f"Excerpt: {result.snippet}")
        entry = "\n".join(lines)
        separator = 2 if parts else 0
        if used + separator + len(entry) > char_budget:
            if parts:
                break
            entry = entry[:char_budget]
        parts.append(entry)
        ids.append(result.node_id)
        used += separator + len(entry)
    return "\n\n".join(parts), ids


def extract_citations(text: str, allowed: list[str]) -> tuple[str, list[str]]:
    """Citations in order of first appearance; unknown ids are removed from the text."""
    allowed_set = set(allowed)
    citations: list[str] = []

    def _keep(match: re.Match) -> str:
        node_id = match.group(1)
        if node_id not in allowed_set:
            log.debug(f"Stripped unknown citation [{node_id}]")
            return ""
        if node_id not in citations:
            citations.append(node_id)
        return match.group(0)

    cleaned = _CITATION_RE.sub(_keep, text)
    return re.sub(r"[ \t]{2,}", " ", cleaned).strip(), citations


class AnswerSynthesizer:
    """Single-shot cited answer from the chat model."""

    def __init__(self, chat: ChatClient, char_budget: int = 12000):
        self.chat = chat
        self.char_budget = char_budget

    def synthesize(
        self,
        query: str,
        results: list[SearchResult],
        writer: TextIO | None = None,
        cancel: CancellationToken | None = None,
    ) -> Answer:
        """Answer ``query`` from ``results``.

        With a ``writer``, tokens are written as they arrive and the cleaned
        answer is still returned at the end.

        Raises:
            ExternalServiceError: If the chat model fails after retries
            CancelledError: If cancelled while waiting for the model
        """
        if not results:
            if writer is not None:
                writer.write(NO_CONTEXT_ANSWER)
            return Answer(text=NO_CONTEXT_ANSWER)

        context, context_ids = build_context(results, self.char_budget)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"## Context\n{context}\n\n## Question\n{query}"},
        ]

        with log_timing(f"Answer synthesis ({len(context_ids)} entries, {len(context)} chars)", log):
            if writer is None:
                text = self.chat.chat(messages)
            else:
                chunks: list[str] = []
                for chunk in self.chat.chat(messages, stream=True):
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    writer.write(chunk)
                    if hasattr(writer, "flush"):
                        writer.flush()
                    chunks.append(chunk)
                text = "".join(chunks)

        cleaned, citations = extract_citations(text, context_ids)
        log.debug(f"Answer cites {len(citations)} of {len(context_ids)} context entries")
        return Answer(text=cleaned, citations=citations)
