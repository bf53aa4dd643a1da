import json

import respx
from httpx import ConnectError, Response

from deepresearch.search import ConversationSearchClient, parse_search_body


BASE = "http://search.test"


def test_search_payload_and_list_body():
    client = ConversationSearchClient(BASE, collection="issues", mode="keyword")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json=[
                        {"url": "https://github.com/a/b/issues/1", "summary": "one"},
                        {"summary": "no url"},
                        {"url": "https://github.com/a/b/issues/2", "summary": "two"},
                    ],
                )

            respx_mock.post(f"{BASE}/search").mock(side_effect=handler)
            results = client.search("flaky ci", limit=5)
            assert [r["url"] for r in results] == [
                "https://github.com/a/b/issues/1",
                "https://github.com/a/b/issues/2",
            ]
            assert captured["json"] == {"query": "flaky ci", "limit": 5, "mode": "keyword", "collection": "issues"}
    finally:
        client.close()


def test_search_accepts_results_object_and_respects_limit():
    client = ConversationSearchClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            body = {"results": [{"url": f"https://x/{i}"} for i in range(4)]}
            respx_mock.post(f"{BASE}/search").mock(return_value=Response(200, json=body))
            assert len(client.search("q", limit=2)) == 2
    finally:
        client.close()


def test_search_failures_yield_empty_list():
    client = ConversationSearchClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(f"{BASE}/search")
            route.mock(return_value=Response(500, json={"error": "boom"}))
            assert client.search("q") == []
            route.mock(side_effect=ConnectError("refused"))
            assert client.search("q") == []
        assert client.search("q", mode="vector") == []
    finally:
        client.close()


def test_fetch_returns_record_or_none():
    client = ConversationSearchClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(f"{BASE}/conversation")
            route.mock(return_value=Response(200, json={"title": "T", "body": "B"}))
            record = client.fetch("https://github.com/a/b/issues/1")
            assert record == {"title": "T", "body": "B", "url": "https://github.com/a/b/issues/1"}
            assert route.calls.last.request.url.params["url"] == "https://github.com/a/b/issues/1"

            route.mock(return_value=Response(404, text="missing"))
            assert client.fetch("https://github.com/a/b/issues/9") is None
    finally:
        client.close()


def test_parse_search_body_handles_json_lines():
    body = '{"url": "https://x/1"}\nnot json\n\n{"url": "https://x/2", "title": "t"}\n{"title": "no url"}'
    assert [r["url"] for r in parse_search_body(body)] == ["https://x/1", "https://x/2"]
    assert parse_search_body("") == []
    assert parse_search_body('"just a string"') == []
