from __future__ import annotations

from itertools import combinations

from app.models.schemas import IdeaInput
from app.research_core.models.interfaces import SearchQuery
from app.research_core.similarity import jaccard, word_tokens
from app.services.query_planner import QueryPlanner, extract_key_terms, normalize_text


def _similarity(left: SearchQuery, right: SearchQuery) -> float:
    return jaccard(word_tokens(left.text), word_tokens(right.text))


def test_plan_for_loom_spans_intents_without_near_duplicates():
    idea = IdeaInput(title="Loom", one_liner="Agentic coding assistant")

    queries = QueryPlanner(max_queries=20).plan(idea)

    assert queries
    assert len(queries) <= 20
    assert len({q.intent for q in queries}) >= 3
    for left, right in combinations(queries, 2):
        assert _similarity(left, right) <= 0.8, (left.text, right.text)


def test_plan_respects_max_queries():
    idea = IdeaInput(title="Loom", one_liner="Agentic coding assistant")

    queries = QueryPlanner(max_queries=5).plan(idea)

    assert len(queries) == 5
    # Round-robin across intents keeps even a short plan diverse.
    assert len({q.intent for q in queries}) == 5


def test_plan_assigns_intent_priorities():
    idea = IdeaInput(title="Loom", one_liner="Agentic coding assistant")

    queries = QueryPlanner(max_queries=50).plan(idea)
    priorities = {q.intent: q.priority for q in queries}

    assert priorities["competitors"] == 1
    assert priorities["market"] == 1
    assert priorities["problem"] == 1
    assert priorities["funding"] == 2
    assert priorities["regulation"] == 2
    assert priorities["postmortems"] == 3


def test_plan_falls_back_when_no_key_terms():
    idea = IdeaInput(title="AI", category="fintech")

    queries = QueryPlanner().plan(idea)

    assert [q.text for q in queries] == [
        "AI competitors",
        "fintech market size",
        "AI startup funding",
    ]
    assert {q.intent for q in queries} == {"competitors", "market", "funding"}


def test_fallback_uses_one_liner_as_problem_query():
    idea = IdeaInput(title="Go", one_liner="to do it")

    queries = QueryPlanner().plan(idea)

    assert SearchQuery(text="to do it", intent="problem", priority=1) in queries
    assert SearchQuery(text="Go market", intent="market", priority=1) in queries


def test_zero_max_queries_returns_empty_plan():
    idea = IdeaInput(title="Loom", one_liner="Agentic coding assistant")

    assert QueryPlanner(max_queries=0).plan(idea) == []


def test_deduplicate_drops_near_identical_queries():
    planner = QueryPlanner(similarity_threshold=0.8)
    queries = [
        SearchQuery(text="loom competitors", intent="competitors"),
        SearchQuery(text='"Loom" competitors!', intent="competitors"),
        SearchQuery(text="loom pricing", intent="market"),
    ]

    result = planner.deduplicate(queries)

    assert [q.text for q in result] == ["loom competitors", "loom pricing"]


def test_deduplicate_keeps_queries_at_the_threshold():
    planner = QueryPlanner(similarity_threshold=0.5)
    queries = [
        SearchQuery(text="alpha beta", intent="market"),
        SearchQuery(text="alpha gamma beta delta", intent="market"),
    ]

    # Jaccard is exactly 0.5, which is not above the threshold.
    assert len(planner.deduplicate(queries)) == 2


def test_normalize_text_drops_stopwords_and_short_tokens():
    assert normalize_text("The Future of AI, for Developers!") == "future developers"
    assert normalize_text("Startup was acquired") == "startup acquired"


def test_extract_key_terms_keeps_long_and_capitalized_tokens():
    terms = extract_key_terms("Loom", "An agentic tool for the Loom team")

    # "tool" and "team" are short and lowercase in the source text.
    assert terms == ["loom", "agentic"]
