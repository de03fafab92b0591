"""Answer synthesis tests for TaskWing.

Tests cited answers over search results:
- Context packing under a character budget
- Citations restricted to ids present in the context
- Streaming to a writer
- Graceful fallback when no chat model is available
"""

import io

import pytest

from taskwing.knowledge import KnowledgeService, SearchOptions
from taskwing.knowledge.answer import NO_CONTEXT_ANSWER, AnswerSynthesizer, build_context, extract_citations
from taskwing.models import NodeType, SearchResult

WS = "ws-answer"


def result(node_id: str, title: str, summary: str = "") -> SearchResult:
    return SearchResult(node_id=node_id, type=NodeType.FEATURE, title=title, summary=summary, score=1.0, source="fts")


class TestContext:
    def test_entries_carry_ids(self):
        context, ids = build_context([result("node-0001", "Auth", "JWT auth")], 1000)
        assert context.startswith("[node-0001] (feature) Auth")
        assert ids == ["node-0001"]

    def test_budget_stops_at_whole_entries(self):
        results = [result(f"node-000{i}", "X" * 40) for i in range(5)]
        context, ids = build_context(results, 130)
        assert len(context) <= 130
        assert ids == ["node-0000", "node-0001"]

    def test_first_entry_is_truncated_to_budget(self):
        context, ids = build_context([result("node-0001", "Y" * 500)], 50)
        assert len(context) == 50
        assert ids == ["node-0001"]


class TestCitations:
    def test_unknown_ids_are_stripped(self):
        text, cited = extract_citations("Uses JWT [node-0001] and [made-up-id].", ["node-0001"])
        assert cited == ["node-0001"]
        assert "made-up-id" not in text

    def test_order_of_first_appearance(self):
        _, cited = extract_citations("[node-0002] then [node-0001] then [node-0002]", ["node-0001", "node-0002"])
        assert cited == ["node-0002", "node-0001"]


class TestSynthesizer:
    def test_no_results_answers_without_model(self, make_chat):
        chat = make_chat("unused")
        answer = AnswerSynthesizer(chat).synthesize("why?", [])
        assert answer.text == NO_CONTEXT_ANSWER
        assert chat.messages == []

    def test_answer_with_citations(self, make_chat):
        chat = make_chat("Auth uses stateless JWTs [node-0001].")
        answer = AnswerSynthesizer(chat).synthesize("how is auth done?", [result("node-0001", "Auth")])
        assert answer.citations == ["node-0001"]
        prompt = chat.messages[0][1]["content"]
        assert "[node-0001] (feature) Auth" in prompt
        assert prompt.endswith("how is auth done?")

    def test_streaming_writes_chunks(self, make_chat):
        reply = "Auth uses stateless JWTs [node-0001]."
        writer = io.StringIO()
        answer = AnswerSynthesizer(make_chat(reply)).synthesize("q", [result("node-0001", "Auth")], writer=writer)
        assert writer.getvalue() == reply
        assert answer.text == reply


class TestAsk:
    """KnowledgeService.ask wiring."""

    def test_ask_without_chat_is_unavailable(self, service):
        service.create_feature(WS, "Auth", "JWT auth")
        response = service.ask("jwt", SearchOptions(workspace_id=WS))
        assert response.answer_unavailable
        assert "llm_unconfigured" in response.degraded
        assert [r.title for r in response.results] == ["Auth"]

    def test_ask_with_failing_chat_keeps_results(self, db, config, embedder, make_chat):
        svc = KnowledgeService(db, embedder=embedder, chat=make_chat(fail=True), config=config)
        try:
            svc.create_feature(WS, "Auth", "JWT auth")
            response = svc.ask("jwt", SearchOptions(workspace_id=WS))
            assert response.answer_unavailable
            assert "llm" in response.degraded
            assert response.results
        finally:
            svc.retriever.close()

    def test_ask_cites_stored_node(self, db, config, embedder, make_chat):
        svc = KnowledgeService(db, embedder=embedder, config=config)
        try:
            feature = svc.create_feature(WS, "Auth", "JWT auth")
            svc.answerer = AnswerSynthesizer(make_chat(f"Auth is JWT based [{feature.id}]."))
            response = svc.ask("jwt", SearchOptions(workspace_id=WS))
            assert response.answer.citations == [feature.id]
            assert response.to_dict()["answer"]["citations"] == [feature.id]
        finally:
            svc.retriever.close()


@pytest.mark.parametrize("budget", [0, 10])
def test_small_budget_still_returns_first_entry_id(budget):
    _, ids = build_context([result("node-0001", "Auth")], budget)
    assert ids == ["node-0001"]
