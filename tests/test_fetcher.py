import asyncio

import httpx
import pytest

from baitbreaker.fetcher.article_fetcher import ArticleFetcher
from baitbreaker.fetcher.errors import ERROR_EMPTY_CONTENT, ERROR_HTTP, ERROR_TIMEOUT, FetchError
from baitbreaker.fetcher.parser import extract_main_text


ARTICLE_HTML = """
<html>
  <head><title>Site</title><style>body { color: red }</style></head>
  <body>
    <nav>Home | About</nav>
    <article>
      <h1>The answer</h1>
      <script>track()</script>
      <p>It was   the butler.</p>
    </article>
  </body>
</html>
"""


def _fetcher(handler, **kwargs):
    kwargs.setdefault("max_retries", 0)
    return ArticleFetcher(
        timeout_seconds=5,
        user_agent="baitbreaker-test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _fetch(fetcher, url="https://news.example/story"):
    async def run():
        try:
            return await fetcher.fetch_text(url)
        finally:
            await fetcher.aclose()

    return asyncio.run(run())


def test_parser_prefers_article_container():
    text = extract_main_text(ARTICLE_HTML)
    assert "The answer" in text
    assert "butler" in text
    assert "Home | About" not in text
    assert "track()" not in text


def test_parser_falls_back_to_body():
    assert extract_main_text("<html><body><div>Just a div</div></body></html>") == "Just a div"


def test_fetch_returns_flattened_article_text():
    seen = []

    def handler(request):
        seen.append(request.headers["User-Agent"])
        return httpx.Response(200, text=ARTICLE_HTML)

    text = _fetch(_fetcher(handler))

    assert text == "The answer It was the butler."
    assert seen == ["baitbreaker-test"]


def test_fetch_truncates_long_articles():
    def handler(request):
        return httpx.Response(200, text="<article>" + "word " * 100 + "</article>")

    assert len(_fetch(_fetcher(handler, max_chars=20))) == 20


@pytest.mark.parametrize("status", [404, 429, 503])
def test_http_errors(status):
    def handler(request):
        return httpx.Response(status, text="nope")

    with pytest.raises(FetchError) as info:
        _fetch(_fetcher(handler))
    assert info.value.error_type == ERROR_HTTP


def test_empty_page():
    def handler(request):
        return httpx.Response(200, text="<html><body>   </body></html>")

    with pytest.raises(FetchError) as info:
        _fetch(_fetcher(handler))
    assert info.value.error_type == ERROR_EMPTY_CONTENT


def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(FetchError) as info:
        _fetch(_fetcher(handler))
    assert info.value.error_type == ERROR_TIMEOUT
