import httpx

from deepresearch.research_agent import ResearchSubAgent
from deepresearch.schemas import ResearchResult
from deepresearch.summarizer import SummarizerAgent
from tests.fakes import FakeGenerator, FakeSearch, SlowSummarizer


def _hits(*urls):
    return [{"url": url, "title": url.rsplit("/", 1)[-1], "summary": f"snippet {url}"} for url in urls]


def test_facts_keep_hit_order_when_summaries_finish_out_of_order():
    urls = ["https://x/1", "https://x/2", "https://x/3"]
    summarizer = SlowSummarizer({urls[0]: 0.2, urls[1]: 0.1, urls[2]: 0.0})
    agent = ResearchSubAgent(lambda query, limit: _hits(*urls), summarizer)

    result = agent.research("flaky", aspect_id="a1")

    assert [summary.source_url for summary in result.summaries] == urls
    assert [fact.source_urls[0] for fact in result.facts] == urls
    assert all(fact.aspect_id == "a1" for fact in result.facts)
    assert len(summarizer.threads) == 3


def test_failed_summary_is_retried_then_replaced_by_empty_summary():
    search = FakeSearch(hits_per_query=3)
    first, second, third = [f"https://github.com/acme/flaky/issues/{i}" for i in (1, 2, 3)]
    generator = FakeGenerator(summary_failures={first: 1, second: 5})
    agent = ResearchSubAgent(search, SummarizerAgent(generator), retry_attempts=2)

    result = agent.research("flaky", aspect_id="a1")

    assert [summary.source_url for summary in result.summaries] == [first, second, third]
    assert result.summaries[1].facts == []
    assert result.summaries[1].confidence == 0.0
    assert {url for fact in result.facts for url in fact.source_urls} == {first, third}
    assert generator.count("summary") == 2 + 2 + 1


def test_limit_is_passed_and_urlless_hits_dropped():
    calls = []

    def search(query, limit):
        calls.append((query, limit))
        return [{"title": "no url"}, {"url": "https://x/1", "summary": "s"}]

    generator = FakeGenerator()
    result = ResearchSubAgent(search, SummarizerAgent(generator)).research("flaky", limit=4)
    assert calls == [("flaky", 4)]
    assert [hit["url"] for hit in result.raw_results] == ["https://x/1"]
    assert len(result.facts) == 2


def test_search_errors_yield_empty_result():
    search = FakeSearch(fail_queries=["flaky"])
    assert ResearchSubAgent(search, SlowSummarizer({})).research("flaky") == ResearchResult()

    def broken(query, limit):
        raise httpx.ConnectError("refused")

    assert ResearchSubAgent(broken, SlowSummarizer({})).research("flaky") == ResearchResult()
    assert ResearchSubAgent(lambda q, n: [], SlowSummarizer({})).research("flaky") == ResearchResult()


def test_fetch_merges_full_record_before_summarizing():
    generator = FakeGenerator()
    fetched = []

    def fetch(url):
        fetched.append(url)
        return {"body": f"full thread for {url}"}

    agent = ResearchSubAgent(lambda q, n: _hits("https://x/1"), SummarizerAgent(generator), fetch=fetch)
    result = agent.research("flaky")
    assert fetched == ["https://x/1"]
    assert "full thread for https://x/1" in generator.prompts("summary")[0]
    assert result.raw_results[0].get("body") is None
